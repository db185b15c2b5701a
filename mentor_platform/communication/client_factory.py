from __future__ import annotations

import logging
from functools import lru_cache

from mentor_platform.communication.email_clients import BaseEmailClient, LogEmailClient, RemoteEmailClient
from mentor_platform.config import settings


logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_email_client() -> BaseEmailClient:
    mode = (settings.email_mode or "log").strip().lower()
    logger.info(
        "email_mode_selected",
        extra={"mode": mode, "service_url": settings.email_service_url},
    )
    if mode == "remote":
        return RemoteEmailClient(
            settings.email_service_url,
            token=settings.email_service_token,
            sender=settings.email_sender,
            timeout=settings.email_timeout_seconds,
        )
    return LogEmailClient()
