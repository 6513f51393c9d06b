"""Progress notification sinks.

Publishing is best-effort: every sink swallows and logs its own failures so
that a broken notification path never fails a provisioning run. The resource
store stays the durable record.
"""

from __future__ import annotations

import json
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

import requests

from .utils.logging import get_logger

if TYPE_CHECKING:
    from .config import EventsConfig

logger = get_logger(__name__)


class EventSink(Protocol):
    def publish(self, server_id: str, payload: Dict[str, Any]) -> None:
        ...


class NullEventSink:
    def publish(self, server_id: str, payload: Dict[str, Any]) -> None:
        return None


class LoggingEventSink:
    def publish(self, server_id: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "📡 [server %s] %s %s (%s/%s) %s",
            server_id,
            payload.get("operation"),
            payload.get("label"),
            payload.get("current_step"),
            payload.get("total_steps"),
            payload.get("status"),
        )


class WebhookEventSink:
    """POSTs each payload to a URL from a background thread."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 2.0,
        session: Optional[requests.Session] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-sink")

    def publish(self, server_id: str, payload: Dict[str, Any]) -> Optional[Future]:
        try:
            future = self._executor.submit(self._post, server_id, payload)
        except RuntimeError as exc:
            logger.warning("Event sink unavailable: %s", exc)
            return None
        return future

    def _post(self, server_id: str, payload: Dict[str, Any]) -> None:
        try:
            response = self.session.post(
                self.url,
                json={"server_id": server_id, **payload},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Failed to publish progress for server %s: %s", server_id, exc)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class RedisEventSink:
    """Publishes JSON payloads on `<prefix>:<server_id>` pub/sub channels."""

    def __init__(self, client: Any, channel_prefix: str = "provisioning") -> None:
        self.client = client
        self.channel_prefix = channel_prefix

    def channel_for(self, server_id: str) -> str:
        return f"{self.channel_prefix}:{server_id}"

    def publish(self, server_id: str, payload: Dict[str, Any]) -> None:
        try:
            self.client.publish(self.channel_for(server_id), json.dumps(payload, default=str))
        except Exception as exc:
            logger.warning("Failed to publish progress for server %s: %s", server_id, exc)


def build_event_sink(config: "EventsConfig", redis_client: Any = None) -> EventSink:
    if config.sink == "none":
        return NullEventSink()
    if config.sink == "webhook":
        if not config.webhook_url:
            raise ValueError("Webhook event sink selected but no webhook_url provided")
        return WebhookEventSink(config.webhook_url, timeout=config.webhook_timeout)
    if config.sink == "redis":
        if redis_client is None:
            raise ValueError("Redis event sink selected but no redis client available")
        return RedisEventSink(redis_client, channel_prefix=config.channel_prefix)
    return LoggingEventSink()
