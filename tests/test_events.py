import json
import unittest
from concurrent.futures import ThreadPoolExecutor

import requests

from remote_provisioner.config import EventsConfig
from remote_provisioner.events import (
    LoggingEventSink,
    NullEventSink,
    RedisEventSink,
    WebhookEventSink,
    build_event_sink,
)

from fakes import FakeRedis


class FakeResponse:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHTTPSession:
    def __init__(self, status_code: int = 200, error: Exception = None) -> None:
        self.status_code = status_code
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)


class EventSinkTests(unittest.TestCase):
    def test_build_event_sink_selects_implementation(self) -> None:
        self.assertIsInstance(build_event_sink(EventsConfig(sink="none")), NullEventSink)
        self.assertIsInstance(build_event_sink(EventsConfig(sink="log")), LoggingEventSink)
        self.assertIsInstance(build_event_sink(EventsConfig(sink="redis"), FakeRedis()), RedisEventSink)
        with self.assertRaises(ValueError):
            build_event_sink(EventsConfig(sink="redis"))
        with self.assertRaises(ValueError):
            build_event_sink(EventsConfig(sink="webhook"))

    def test_redis_sink_publishes_per_server_channel(self) -> None:
        client = FakeRedis()
        RedisEventSink(client, channel_prefix="progress").publish("srv-1", {"current_step": 2, "total_steps": 7})
        channel, message = client.published[0]
        self.assertEqual(channel, "progress:srv-1")
        self.assertEqual(json.loads(message)["current_step"], 2)

    def test_webhook_sink_posts_payload(self) -> None:
        session = FakeHTTPSession()
        sink = WebhookEventSink(
            "https://panel.example.com/progress", session=session, executor=ThreadPoolExecutor(max_workers=1)
        )
        sink.publish("srv-1", {"label": "Installing PHP packages"}).result(timeout=5)
        sink.close()
        url, body, _ = session.posts[0]
        self.assertEqual(url, "https://panel.example.com/progress")
        self.assertEqual(body, {"server_id": "srv-1", "label": "Installing PHP packages"})

    def test_webhook_failures_are_not_raised(self) -> None:
        for session in (FakeHTTPSession(status_code=500), FakeHTTPSession(error=requests.ConnectionError("down"))):
            sink = WebhookEventSink("https://panel.example.com/progress", session=session)
            sink.publish("srv-1", {"label": "x"}).result(timeout=5)
            sink.close()
            self.assertEqual(len(session.posts), 1)


if __name__ == "__main__":
    unittest.main()
