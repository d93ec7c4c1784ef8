import logging
import os
from threading import Lock
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

logger = logging.getLogger(__name__)

# FCM accepts at most 500 registration tokens per multicast request.
MULTICAST_BATCH_SIZE = 500
DEAD_TOKEN_ERRORS = (
    messaging.UnregisteredError,
    messaging.SenderIdMismatchError,
    exceptions.InvalidArgumentError,
    exceptions.NotFoundError,
)


class PushSender:
    """Firebase Cloud Messaging fan-out; a no-op until FIREBASE_CREDENTIALS_PATH is set."""

    def __init__(self):
        self._lock = Lock()
        self._ready: Optional[bool] = None

    @property
    def enabled(self) -> bool:
        return self._connect()

    def _connect(self) -> bool:
        if self._ready is not None:
            return self._ready
        with self._lock:
            if self._ready is None:
                self._ready = self._init_app()
        return self._ready

    def _init_app(self) -> bool:
        credentials_path = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
        if not credentials_path:
            logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
            return False
        try:
            if not firebase_admin._apps:  # pylint: disable=protected-access
                firebase_admin.initialize_app(credentials.Certificate(credentials_path))
        except (ValueError, OSError):
            logger.exception("Push sender disabled: Firebase init failed")
            return False
        logger.info("Push sender initialized")
        return True

    def _build_message(self, tokens: List[str], title: str, body: str, data: Dict[str, str]):
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            data=data,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default"))),
        )

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Sends to every device and returns the tokens FCM rejected as dead."""
        unique_tokens = list(dict.fromkeys(token for token in tokens if token))
        if not unique_tokens or not self._connect():
            return []
        # FCM data payloads only carry strings.
        payload = {key: str(value) for key, value in (data or {}).items() if value is not None}

        dead: List[str] = []
        delivered = 0
        for start in range(0, len(unique_tokens), MULTICAST_BATCH_SIZE):
            batch_tokens = unique_tokens[start : start + MULTICAST_BATCH_SIZE]
            try:
                batch = messaging.send_each_for_multicast(self._build_message(batch_tokens, title, body, payload))
            except (exceptions.FirebaseError, ValueError):
                logger.exception("Push send failed for %d devices", len(batch_tokens))
                continue
            delivered += batch.success_count
            for token, response in zip(batch_tokens, batch.responses):
                if not response.success and isinstance(response.exception, DEAD_TOKEN_ERRORS):
                    dead.append(token)
        logger.info("Push delivered=%d dead_tokens=%d", delivered, len(dead))
        return dead


push_sender = PushSender()
