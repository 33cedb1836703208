from abc import ABC, abstractmethod
from typing import Optional
import httpx
import structlog

from .config import NotificationLevel

logger = structlog.get_logger()


class NotificationSink(ABC):
    """Fire-and-forget delivery of alert notifications"""

    @abstractmethod
    async def notify(self, owner: str, title: str, message: str, severity: str):
        ...

    async def aclose(self):
        return None


class LoggingNotificationSink(NotificationSink):
    LOG_METHODS = {
        NotificationLevel.INFO: "info",
        NotificationLevel.WARNING: "warning",
        NotificationLevel.ERROR: "error",
    }

    async def notify(self, owner: str, title: str, message: str, severity: str):
        log = getattr(logger, self.LOG_METHODS.get(severity, "warning"))
        log("Alert notification", owner=owner, title=title, message=message, severity=severity)


class WebhookNotificationSink(NotificationSink):
    """Posts notifications as JSON to a webhook; delivery failures are logged, never raised"""

    def __init__(self, url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def notify(self, owner: str, title: str, message: str, severity: str):
        payload = {
            "owner": owner,
            "title": title,
            "message": message,
            "severity": severity
        }
        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Notification delivery failed", owner=owner, title=title, error=str(e))

    async def aclose(self):
        await self.client.aclose()
