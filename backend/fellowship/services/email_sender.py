import logging
import os
import smtplib
from email.message import EmailMessage

from fellowship.config import normalize_env_value, read_bool_env, read_int_env

logger = logging.getLogger(__name__)

APP_NAME = os.getenv("APP_NAME", "Fellowship")


class EmailSender:
    """SMTP delivery for account and community emails; disabled until SMTP_HOST is set."""

    def __init__(self) -> None:
        self.host = normalize_env_value(os.getenv("SMTP_HOST", ""))
        self.port = read_int_env("SMTP_PORT", 587, min_value=1)
        self.user = normalize_env_value(os.getenv("SMTP_USER", ""))
        self.password = normalize_env_value(os.getenv("SMTP_PASS", ""))
        self.sender = normalize_env_value(os.getenv("SMTP_FROM", "")) or self.user or "no-reply@localhost"
        self.use_tls = read_bool_env("SMTP_USE_TLS", True)
        if not self.host:
            logger.info("Email sender disabled: SMTP_HOST not set")

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send(self, to_address: str, subject: str, body: str) -> bool:
        if not self.enabled or not to_address:
            return False
        msg = EmailMessage()
        msg["Subject"] = f"[{APP_NAME}] {subject}"
        msg["From"] = self.sender
        msg["To"] = to_address
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Email send failed to=%s subject=%s", to_address, subject)
            return False
        logger.info("Email sent to=%s subject=%s", to_address, subject)
        return True

    def send_approval(self, to_address: str, name: str) -> bool:
        return self.send(
            to_address,
            "Your membership has been approved",
            f"Hi {name},\n\nAn admin approved your signup request. You can now sign in and join the community.\n",
        )

    def send_rejection(self, to_address: str, name: str, reason: str) -> bool:
        return self.send(
            to_address,
            "Your signup request was not approved",
            f"Hi {name},\n\nYour signup request was not approved.\nReason: {reason}\n\n"
            "Please contact a leader if you think this is a mistake.\n",
        )

    def send_notification(self, to_address: str, title: str, message: str) -> bool:
        return self.send(to_address, title, f"{message}\n")


email_sender = EmailSender()
