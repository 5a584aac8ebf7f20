import asyncio
import contextlib
import io

import httpx
import orjson
import pytest

from geo_relay.config import Config
from geo_relay.fallback import FallbackScheduler
from geo_relay.live import (
    FALLBACK_NO_CREDENTIAL,
    FALLBACK_SETUP_ERROR,
    FALLBACK_STREAM_ERROR,
    LiveFeedAdapter,
)
from geo_relay.runlog import Runlog
from geo_relay.stream_api import StreamAuthError

EVENT = {
    "data": {"id": "1", "text": "hello #geo", "author_id": "9", "entities": {"hashtags": [{"tag": "geo"}]}},
    "includes": {
        "places": [{"full_name": "Oslo, Norway", "country": "Norway", "geo": {"bbox": [10, 59, 11, 60]}}],
        "users": [{"id": "9", "username": "nord"}],
    },
}
EVENT_LINE = orjson.dumps(EVENT).decode("utf-8")


class FakeChannel:
    def __init__(self, close_after_sends: int | None = None) -> None:
        self.sent: list[dict] = []
        self.open = True
        self._closed = asyncio.Event()
        self._close_after_sends = close_after_sends

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, payload: dict) -> bool:
        if not self.open:
            return False
        self.sent.append(payload)
        if self._close_after_sends is not None and len(self.sent) >= self._close_after_sends:
            self.close()
        return True

    def close(self) -> None:
        self.open = False
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


class FakeStreamClient:
    def __init__(self, *, lines=(), fail_rules=None, stream_error=None, hang=False, on_add_rules=None, before_error=None):
        self.calls = []
        self.closed = False
        self.stream_closed = False
        self._lines = list(lines)
        self._fail_rules = fail_rules
        self._stream_error = stream_error
        self._hang = hang
        self._on_add_rules = on_add_rules
        self._before_error = before_error

    def list_rules(self):
        self.calls.append("list_rules")
        if self._fail_rules is not None:
            raise self._fail_rules
        return [{"id": "old-1", "value": "old"}]

    def delete_rules(self, rule_ids):
        self.calls.append(("delete_rules", list(rule_ids)))
        return {}

    def add_rules(self, rules):
        self.calls.append(("add_rules", [rule.value for rule in rules]))
        if self._on_add_rules is not None:
            self._on_add_rules()
        return [{"id": "new"}]

    @contextlib.asynccontextmanager
    async def open_stream(self, params=None):
        self.calls.append(("open_stream", dict(params or {})))
        try:
            yield self._iter_lines()
        finally:
            self.stream_closed = True

    async def _iter_lines(self):
        for line in self._lines:
            yield line
        if self._stream_error is not None:
            if self._before_error is not None:
                self._before_error()
            raise self._stream_error
        if self._hang:
            await asyncio.Event().wait()

    def close(self):
        self.closed = True


def _records(stream: io.StringIO) -> list[dict]:
    return [orjson.loads(line) for line in stream.getvalue().splitlines()]


def _fallback(channel: FakeChannel, ticks: int = 2) -> FallbackScheduler:
    waits = []

    async def sleep(seconds: float) -> None:
        waits.append(seconds)
        if len(waits) >= ticks:
            channel.close()

    return FallbackScheduler(sleep=sleep)


def _adapter(config, channel, fallback, runlog, client=None):
    factory_calls = []

    def factory(cfg):
        factory_calls.append(cfg)
        return client

    adapter = LiveFeedAdapter(
        config=config,
        channel=channel,
        fallback=fallback,
        runlog=runlog,
        client_factory=factory,
        session_id="abc",
    )
    return adapter, factory_calls


@pytest.mark.asyncio
async def test_no_credential_falls_back_without_upstream_calls():
    stream = io.StringIO()
    channel = FakeChannel()
    adapter, factory_calls = _adapter(Config(), channel, _fallback(channel), Runlog(stream=stream))

    reason = await adapter.run()

    assert reason == FALLBACK_NO_CREDENTIAL
    assert factory_calls == []
    assert channel.sent and all(msg["type"] == "tweet" for msg in channel.sent)
    types = [record["record_type"] for record in _records(stream)]
    assert types[:2] == ["live_unavailable", "fallback_start"]
    assert "live_setup_error" not in types


@pytest.mark.asyncio
async def test_setup_failure_falls_back_and_releases_client():
    stream = io.StringIO()
    channel = FakeChannel()
    client = FakeStreamClient(fail_rules=StreamAuthError("forbidden", status_code=403))
    adapter, factory_calls = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel), Runlog(stream=stream), client
    )

    reason = await adapter.run()

    assert reason == FALLBACK_SETUP_ERROR
    assert len(factory_calls) == 1
    assert client.closed is True
    assert channel.sent
    records = _records(stream)
    setup_errors = [r for r in records if r["record_type"] == "live_setup_error"]
    assert len(setup_errors) == 1
    assert setup_errors[0]["status_code"] == 403
    assert "hint" in setup_errors[0]
    assert setup_errors[0]["session_id"] == "abc"
    fallback = [r for r in records if r["record_type"] == "fallback_start"]
    assert fallback[0]["reason"] == FALLBACK_SETUP_ERROR


@pytest.mark.asyncio
async def test_rules_replaced_and_stream_opened_with_expansions():
    channel = FakeChannel(close_after_sends=1)
    client = FakeStreamClient(lines=[EVENT_LINE], hang=True)
    adapter, _ = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel), Runlog(stream=io.StringIO()), client
    )

    reason = await adapter.run()

    assert reason is None
    assert client.calls[0] == "list_rules"
    assert client.calls[1] == ("delete_rules", ["old-1"])
    assert client.calls[2] == ("add_rules", ["has:geo -is:retweet"])
    assert client.calls[3][0] == "open_stream"
    assert client.calls[3][1]["expansions"] == "geo.place_id,author_id"
    assert channel.sent == [
        {
            "type": "tweet",
            "lat": 59.5,
            "lon": 10.5,
            "text": "hello #geo",
            "username": "@nord",
            "trending": True,
            "hashtags": ["geo"],
            "place": "Oslo, Norway",
            "country": "Norway",
            "timestamp": channel.sent[0]["timestamp"],
        }
    ]
    assert client.stream_closed is True
    assert client.closed is True
    assert adapter.stats.forwarded == 1
    assert adapter.fallback.stats.ticks == 0


@pytest.mark.asyncio
async def test_stream_error_switches_to_fallback():
    stream = io.StringIO()
    channel = FakeChannel()
    client = FakeStreamClient(lines=[EVENT_LINE, "", "{broken"], stream_error=httpx.ReadError("reset"))
    adapter, _ = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel), Runlog(stream=stream), client
    )

    reason = await adapter.run()

    assert reason == FALLBACK_STREAM_ERROR
    assert channel.sent[0]["username"] == "@nord"
    assert len(channel.sent) > 1
    assert adapter.stats.forwarded == 1
    assert adapter.normalizer.decode_errors == 1
    assert client.stream_closed is True
    types = [record["record_type"] for record in _records(stream)]
    assert "live_stream_error" in types
    assert "live_setup_error" not in types


@pytest.mark.asyncio
async def test_stream_ending_while_client_open_is_a_stream_failure():
    channel = FakeChannel()
    client = FakeStreamClient(lines=[])
    adapter, _ = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel, ticks=1), Runlog(stream=io.StringIO()), client
    )

    reason = await adapter.run()

    assert reason == FALLBACK_STREAM_ERROR
    assert adapter.fallback.stats.sent >= 1


@pytest.mark.asyncio
async def test_records_without_geo_are_not_forwarded():
    channel = FakeChannel()
    no_place = orjson.dumps({"data": EVENT["data"], "includes": {"users": []}}).decode("utf-8")
    client = FakeStreamClient(lines=[no_place, EVENT_LINE], hang=True)
    adapter, _ = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel), Runlog(stream=io.StringIO()), client
    )
    task = asyncio.create_task(adapter.run())
    for _ in range(100):
        if channel.sent:
            break
        await asyncio.sleep(0.01)
    channel.close()
    assert await asyncio.wait_for(task, timeout=1.0) is None
    assert len(channel.sent) == 1
    assert adapter.normalizer.skipped_no_place == 1


@pytest.mark.asyncio
async def test_client_leaving_during_rule_setup_skips_stream_and_fallback():
    stream = io.StringIO()
    channel = FakeChannel()
    client = FakeStreamClient(lines=[EVENT_LINE], on_add_rules=channel.close)
    adapter, _ = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel), Runlog(stream=stream), client
    )

    reason = await adapter.run()

    assert reason is None
    assert [call for call in client.calls if call[0] == "open_stream"] == []
    assert channel.sent == []
    assert adapter.fallback.stats.ticks == 0
    assert client.closed is True
    types = [record["record_type"] for record in _records(stream)]
    assert "fallback_start" not in types


@pytest.mark.asyncio
async def test_stream_error_racing_client_close_ends_quietly():
    stream = io.StringIO()
    channel = FakeChannel()
    client = FakeStreamClient(
        lines=[EVENT_LINE], stream_error=httpx.ReadError("reset"), before_error=channel.close
    )
    adapter, _ = _adapter(
        Config(bearer_token="secret-token"), channel, _fallback(channel), Runlog(stream=stream), client
    )
    loop = asyncio.get_running_loop()
    unhandled = []
    loop.set_exception_handler(lambda _loop, context: unhandled.append(context))
    try:
        reason = await adapter.run()
        await asyncio.sleep(0)
    finally:
        loop.set_exception_handler(None)

    assert reason is None
    assert adapter.stats.forwarded == 1
    assert adapter.fallback.stats.ticks == 0
    assert unhandled == []
    types = [record["record_type"] for record in _records(stream)]
    assert "live_stream_error" not in types
