from __future__ import annotations

from typing import Protocol
from urllib.parse import urlencode, urlparse

from tokenkeep.logging import get_logger
from tokenkeep.service.security import email_digest

logger = get_logger(__name__)

_LINK_PATHS = {
    "password_reset": "/reset-password",
    "email_verification": "/verify-email",
}


class Notifier(Protocol):
    """Outbound delivery of single-use tokens (e-mail or similar)."""

    def send_password_reset(self, to_email: str, token: str) -> None: ...

    def send_email_verification(self, to_email: str, token: str) -> None: ...


class LoggingNotifier:
    """Development notifier: logs the delivery instead of sending mail.

    Only the link path and an e-mail digest reach the log stream. Nothing is
    kept after the call returns; subclasses that actually deliver override
    ``deliver``.
    """

    def __init__(self, base_url: str = "http://localhost:8000") -> None:
        self.base_url = base_url.rstrip("/")

    def link_for(self, kind: str, to_email: str, token: str) -> str:
        query = urlencode({"email": to_email, "token": token})
        return f"{self.base_url}{_LINK_PATHS[kind]}?{query}"

    def deliver(self, kind: str, to_email: str, link: str) -> None:
        logger.info(
            "notification_dev_mode",
            kind=kind,
            email_hash=email_digest(to_email),
            path=urlparse(link).path,
        )

    def send_password_reset(self, to_email: str, token: str) -> None:
        self.deliver("password_reset", to_email, self.link_for("password_reset", to_email, token))

    def send_email_verification(self, to_email: str, token: str) -> None:
        self.deliver(
            "email_verification", to_email, self.link_for("email_verification", to_email, token)
        )
