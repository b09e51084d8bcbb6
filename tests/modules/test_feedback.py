from typing import Any
import asyncio

from aiohttp import web
from aiohttp.test_utils import TestServer
import aiohttp
import pytest

from fuzzci.common.types import NotificationDeliveryError
from fuzzci.config import SlackConfig
from fuzzci.modules.feedback import (
    CoverageUpdated, CycleStarted, CycleStopped, Error, Message, Notifier, ReportReady, render
)
from fuzzci.modules.project import TargetCoverage
from fuzzci.modules.slack import SlackClient

DESCRIPTION = "Branch _master_, fix parser - 01234 by dev at 2024-01-02 03:04:05"

class RecordingClient:
    def __init__(self, exc: BaseException | None = None):
        self.sent: list[str] = []
        self.exc = exc

    async def send(self, text: str) -> None:
        await asyncio.sleep(0)
        if self.exc is not None:
            raise self.exc
        self.sent.append(text)

def test_render():
    assert render(CycleStarted("0123456789"), DESCRIPTION) == f"{DESCRIPTION}\nFuzzing started at 0123456"
    assert render(CycleStopped("superseded"), DESCRIPTION).endswith("Fuzzing stopped: superseded")
    assert render(Error("proj/t1: boom"), DESCRIPTION).endswith("Error: proj/t1: boom")
    assert render(Error("proj/t1: no progress", timeout=True), DESCRIPTION).endswith("Timeout: proj/t1: no progress")
    assert render(ReportReady("http://ci/reports/x/"), DESCRIPTION).endswith("http://ci/reports/x/")
    assert render(ReportReady("http://ci/reports/x/", 12.5), DESCRIPTION).endswith("http://ci/reports/x/ (12.50% of lines)")
    assert render(Message("Preparing for fuzzing"), DESCRIPTION) == f"{DESCRIPTION}\nPreparing for fuzzing"

    targets = (TargetCoverage("t2", 5, None, 1), TargetCoverage("t1", 10, 100, 0))
    text = render(CoverageUpdated("proj", 15, None, targets), DESCRIPTION)
    assert text.splitlines()[1:] == [
        "*proj*: 15/? edges",
        "- *t1*: 10/100 edges, 0 crashes",
        "- *t2*: 5/? edges, 1 crashes",
    ]

async def test_notifier_delivers_errors_only():
    client = RecordingClient()
    notifier = Notifier(client, DESCRIPTION)
    notifier.notify(Message("Preparing for fuzzing"))
    notifier.notify(CycleStarted("0123456789"))
    notifier.notify(Error("boom"))
    await notifier.drain()
    assert client.sent == [f"{DESCRIPTION}\nError: boom"]

async def test_notifier_verbose():
    client = RecordingClient()
    notifier = Notifier(client, DESCRIPTION, verbose=True)
    notifier.notify(Message("Preparing for fuzzing"))
    notifier.notify(CycleStopped("finished"))
    await notifier.drain()
    assert len(client.sent) == 2

@pytest.mark.parametrize("exc", [
    NotificationDeliveryError("rejected"),
    aiohttp.ClientConnectionError("unreachable"),
    TimeoutError(),
])
async def test_delivery_failure_is_dropped(exc: BaseException):
    notifier = Notifier(RecordingClient(exc), DESCRIPTION)
    notifier.notify(Error("boom"))
    await notifier.drain()

class FakeSlack:
    def __init__(self, response: dict[str, Any]):
        self.response = response
        self.requests: list[tuple[dict[str, str], Any]] = []

    async def post_message(self, request: web.Request) -> web.Response:
        self.requests.append((dict(request.headers), await request.json()))
        return web.json_response(self.response)

    async def __aenter__(self) -> TestServer:
        app = web.Application()
        _ = app.router.add_post("/api/chat.postMessage", self.post_message)
        self.server = TestServer(app)
        await self.server.start_server()
        return self.server

    async def __aexit__(self, *exc: Any) -> None:
        await self.server.close()

async def test_slack_send(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SLACK_AUTH_TOKEN", raising=False)
    slack = FakeSlack({"ok": True, "warning": "missing_charset"})
    async with slack as server:
        conf = SlackConfig(channel="C123", token="xoxb-test", api_url=str(server.make_url("/api/chat.postMessage")))
        await SlackClient(conf).send("hello")
        async with SlackClient(conf) as client:
            await client.send("again")

    assert [body for _, body in slack.requests] == [
        {"channel": "C123", "text": "hello"},
        {"channel": "C123", "text": "again"},
    ]
    headers = slack.requests[0][0]
    assert headers["Authorization"] == "Bearer xoxb-test"
    assert headers["Content-Type"].startswith("application/json")

async def test_slack_rejected():
    async with FakeSlack({"ok": False, "error": "channel_not_found"}) as server:
        conf = SlackConfig(channel="C123", token="xoxb-test", api_url=str(server.make_url("/api/chat.postMessage")))
        with pytest.raises(NotificationDeliveryError, match="channel_not_found"):
            await SlackClient(conf).send("hello")
