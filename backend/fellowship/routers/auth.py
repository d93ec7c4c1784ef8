from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from fellowship.auth import (
    create_access_token,
    get_optional_user,
    login_limiter,
    parse_bearer_token,
    require_authenticated_user,
    revoke_access_token,
)
from fellowship.models import (
    AuthLoginRequest,
    AuthLoginResponse,
    AuthStatusResponse,
    SignupRequest,
    SignupResponse,
    UserProfile,
)
from fellowship.services.permission_audit import permission_audit
from fellowship.services.user_store import UserStoreConflictError, UserStorePermissionError, user_store

router = APIRouter(prefix="/auth", tags=["auth"])


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@router.post("/signup-request", response_model=SignupResponse, status_code=201)
def signup_request(payload: SignupRequest):
    try:
        member = user_store.create_pending_member(payload)
    except UserStoreConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SignupResponse(
        request_id=member.id,
        message="Signup request received. You can sign in once an admin approves it.",
    )


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest, request: Request):
    blocked_until = login_limiter.blocked_until(payload.email)
    if blocked_until:
        raise HTTPException(
            status_code=429,
            detail={
                "message": "Too many failed login attempts. Please try again later.",
                "blocked_until": blocked_until.isoformat(),
            },
        )
    try:
        user = user_store.authenticate(payload.email, payload.password)
    except UserStorePermissionError as exc:
        permission_audit.log_auth_action(
            user_id=payload.email,
            user_role="member",
            action="login_unapproved",
            success=False,
            **_client_meta(request),
        )
        raise HTTPException(status_code=403, detail=str(exc))
    if not user:
        remaining = login_limiter.record_failure(payload.email)
        permission_audit.log_auth_action(
            user_id=payload.email,
            user_role="unknown",
            action="login_failure",
            success=False,
            details={"remaining_attempts": remaining},
            **_client_meta(request),
        )
        raise HTTPException(
            status_code=401,
            detail={"message": "Invalid email or password", "remaining_attempts": remaining},
        )
    login_limiter.reset(payload.email)
    permission_audit.log_auth_action(user_id=user.id, user_role=user.role, action="login_success", **_client_meta(request))
    token, expires_at = create_access_token(user_id=user.id)
    return AuthLoginResponse(access_token=token, user_id=user.id, expires_at=expires_at, user=user)


@router.post("/logout")
def logout(
    request: Request,
    user: UserProfile = Depends(require_authenticated_user),
    authorization: Optional[str] = Header(default=None),
):
    token = parse_bearer_token(authorization)
    if token:
        revoke_access_token(token)
    permission_audit.log_auth_action(user_id=user.id, user_role=user.role, action="logout", **_client_meta(request))
    return {"status": "ok"}


@router.post("/refresh", response_model=AuthLoginResponse)
def refresh(
    user: UserProfile = Depends(require_authenticated_user),
    authorization: Optional[str] = Header(default=None),
):
    token = parse_bearer_token(authorization)
    if token:
        revoke_access_token(token)
    new_token, expires_at = create_access_token(user_id=user.id)
    return AuthLoginResponse(access_token=new_token, user_id=user.id, expires_at=expires_at, user=user)


@router.get("/status", response_model=AuthStatusResponse)
def auth_status(user: Optional[UserProfile] = Depends(get_optional_user)):
    return AuthStatusResponse(authenticated=user is not None, user=user)


@router.get("/me", response_model=UserProfile)
def me(user: UserProfile = Depends(require_authenticated_user)):
    return user
