from __future__ import annotations

import logging

import httpx

from mentor_platform.core.errors import ExternalDependencyError


logger = logging.getLogger(__name__)


class BaseEmailClient:
    def send_email(self, to: str, subject: str, body: str) -> bool:
        raise NotImplementedError


class LogEmailClient(BaseEmailClient):
    """Writes outgoing mail to the log. Used for local development and tests."""

    def send_email(self, to: str, subject: str, body: str) -> bool:
        logger.info("email_logged", extra={"to": to, "subject": subject, "body_length": len(body or "")})
        return True


class RemoteEmailClient(BaseEmailClient):
    def __init__(self, base_url: str, *, token: str = "", sender: str = "", timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.sender = sender
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def send_email(self, to: str, subject: str, body: str) -> bool:
        payload = {"from": self.sender, "to": to, "subject": subject, "body": body}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, headers=self._headers()) as client:
                response = client.post("/api/emails", json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("email_send_timeout", extra={"to": to, "timeout": self.timeout})
            raise ExternalDependencyError(f"Email service timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.warning("email_send_failed", extra={"to": to, "error": str(exc)})
            raise ExternalDependencyError(f"Email service error: {exc}") from exc
        return True
