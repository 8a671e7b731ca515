"""Outcome notifications.

Delivery is best-effort: a notifier reports transport problems as
DeliveryError, and dispatch_notification() logs them without letting them
touch the run's own status.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx

from pipewright.errors import DeliveryError
from pipewright.utils.logging import logger


@dataclass(frozen=True)
class NotifySettings:
    """``notify:`` section of a pipeline."""

    channel: str
    webhook: str | None = None
    on: tuple[str, ...] = ("success", "failure")

    def wants(self, outcome: str) -> bool:
        return outcome in self.on


@dataclass(frozen=True)
class NotificationEvent:
    """Structured event describing how a run ended."""

    outcome: str
    job: str
    build_number: int
    branch: str = ""
    commit: str = ""
    duration: float = 0.0
    failed_stages: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["failed_stages"] = list(self.failed_stages)
        return d

    def summary(self) -> str:
        status = "SUCCESS" if self.outcome == "success" else "FAILURE"
        line = f"{status}: {self.job} #{self.build_number}"
        if self.branch:
            line += f" ({self.branch}"
            line += f" @ {self.commit[:8]})" if self.commit else ")"
        if self.failed_stages:
            line += f" - failed: {', '.join(self.failed_stages)}"
        return line


class Notifier(Protocol):
    """Capability that delivers an event to a channel."""

    async def notify(self, event: NotificationEvent, channel: str) -> None:
        """Deliver the event; raise DeliveryError on transport failure."""
        ...


class LogNotifier:
    """Writes the event to the pipeline log. Never fails."""

    async def notify(self, event: NotificationEvent, channel: str) -> None:
        logger.info("[{}] {}", channel, event.summary())


class WebhookNotifier:
    """Posts events as JSON to an incoming-webhook URL (Slack-compatible ``text``)."""

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.client = client
        self.timeout = timeout

    def payload(self, event: NotificationEvent, channel: str) -> dict[str, Any]:
        return {"channel": channel, "text": event.summary(), **event.to_dict()}

    async def notify(self, event: NotificationEvent, channel: str) -> None:
        body = self.payload(event, channel)
        try:
            if self.client is not None:
                resp = await self.client.post(self.url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise DeliveryError(channel, f"{type(e).__name__}: {e}") from e

        if not resp.is_success:
            raise DeliveryError(channel, f"HTTP {resp.status_code}")


async def dispatch_notification(
    notifier: Notifier, event: NotificationEvent, channel: str
) -> bool:
    """Deliver one event, recovering locally from DeliveryError.

    Returns:
        True if the notifier accepted the event.
    """
    try:
        await notifier.notify(event, channel)
    except DeliveryError as e:
        logger.warning("Notification not delivered: {}", e)
        return False
    logger.debug("Notified {} of {} #{}", channel, event.outcome, event.build_number)
    return True
