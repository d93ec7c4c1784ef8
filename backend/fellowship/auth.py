import base64
import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, Header, HTTPException, Request, status

from fellowship.config import read_int_env
from fellowship.models import UserProfile
from fellowship.services.permission_audit import permission_audit
from fellowship.services.user_store import user_store

TOKEN_TTL_HOURS = read_int_env("AUTH_TOKEN_TTL_HOURS", 24, min_value=1)
MAX_LOGIN_ATTEMPTS = read_int_env("MAX_LOGIN_ATTEMPTS", 5, min_value=1)
LOGIN_BLOCK_MINUTES = read_int_env("LOGIN_BLOCK_MINUTES", 15, min_value=1)
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


class TokenRevocationList:
    """Logged-out tokens, kept only until they would have expired anyway."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._revoked: Dict[str, int] = {}

    def revoke(self, token_id: str, expiry_ts: int) -> None:
        now = int(datetime.now(timezone.utc).timestamp())
        with self._lock:
            self._revoked = {key: exp for key, exp in self._revoked.items() if exp > now}
            self._revoked[token_id] = expiry_ts

    def is_revoked(self, token_id: str) -> bool:
        with self._lock:
            return token_id in self._revoked


revoked_tokens = TokenRevocationList()


def create_access_token(user_id: str) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{int(expiry.timestamp())}|{secrets.token_hex(8)}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def decode_access_token(token: str) -> Optional[Tuple[str, int, str]]:
    """Returns (user_id, expiry_ts, token_id) for a valid, unexpired, unrevoked token."""
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        user_id, expiry_raw, token_id = payload.decode("utf-8").split("|", 2)
        expiry_ts = int(expiry_raw)
    except (ValueError, UnicodeDecodeError):
        return None
    if datetime.now(timezone.utc).timestamp() > expiry_ts:
        return None
    if revoked_tokens.is_revoked(token_id):
        return None
    return user_id, expiry_ts, token_id


def verify_access_token(token: str) -> Optional[str]:
    decoded = decode_access_token(token)
    return decoded[0] if decoded else None


def revoke_access_token(token: str) -> bool:
    decoded = decode_access_token(token)
    if not decoded:
        return False
    _, expiry_ts, token_id = decoded
    revoked_tokens.revoke(token_id, expiry_ts)
    return True


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_user(authorization: Optional[str]) -> Optional[UserProfile]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    user_id = verify_access_token(token)
    if not user_id:
        return None
    return user_store.get_user(user_id)


class LoginAttemptLimiter:
    """Counts failed logins per email; MAX_LOGIN_ATTEMPTS failures block the email for a while."""

    def __init__(self, max_attempts: int, block_minutes: int) -> None:
        self.max_attempts = max_attempts
        self.block_window = timedelta(minutes=block_minutes)
        self._lock = Lock()
        self._failures: Dict[str, Tuple[int, datetime]] = {}
        self._last_sweep = datetime.now(timezone.utc)

    def blocked_until(self, key: str) -> Optional[datetime]:
        now = datetime.now(timezone.utc)
        with self._lock:
            entry = self._failures.get(key)
            if not entry:
                return None
            count, last_failure = entry
            if now - last_failure >= self.block_window:
                self._failures.pop(key, None)
                return None
            if count >= self.max_attempts:
                return last_failure + self.block_window
        return None

    def record_failure(self, key: str) -> int:
        """Records one failure and returns the attempts left before the block."""
        now = datetime.now(timezone.utc)
        with self._lock:
            if now - self._last_sweep >= self.block_window:
                for stale in [k for k, (_, last) in self._failures.items() if now - last >= self.block_window]:
                    del self._failures[stale]
                self._last_sweep = now
            count, last_failure = self._failures.get(key, (0, now))
            if now - last_failure >= self.block_window:
                count = 0
            count += 1
            self._failures[key] = (count, now)
        return max(0, self.max_attempts - count)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


login_limiter = LoginAttemptLimiter(max_attempts=MAX_LOGIN_ATTEMPTS, block_minutes=LOGIN_BLOCK_MINUTES)


def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[UserProfile]:
    return resolve_request_user(authorization)


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> UserProfile:
    user = resolve_request_user(authorization)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return user


def require_approved_user(user: UserProfile = Depends(require_authenticated_user)) -> UserProfile:
    if not user.is_approved:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is awaiting admin approval")
    return user


def require_role(*roles: str) -> Callable[..., UserProfile]:
    allowed = set(roles)

    def dependency(request: Request, user: UserProfile = Depends(require_approved_user)) -> UserProfile:
        if user.role not in allowed:
            permission_audit.log_unauthorized_access(
                user_id=user.id,
                user_role=user.role,
                resource=request.url.path,
                action=request.method.lower(),
                ip_address=request.client.host if request.client else None,
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency


require_leader = require_role("leader", "admin")
require_admin = require_role("admin")
