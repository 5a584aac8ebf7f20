from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from .channel import Channel
from .config import Config, mask_token
from .fallback import FallbackScheduler
from .normalize import Normalizer
from .runlog import Runlog, error_fields
from .stream_api import (
    STREAM_PARAMS,
    StreamApiClient,
    StreamApiError,
    StreamAuthError,
    StreamRule,
    replace_stream_rules,
)

FALLBACK_NO_CREDENTIAL = "no_credential"
FALLBACK_SETUP_ERROR = "setup_error"
FALLBACK_STREAM_ERROR = "stream_error"

STAGE_SETUP = "setup"
STAGE_STREAM = "stream"

AUTH_HINT = (
    "access to the filtered stream endpoint was refused; "
    "the developer account may lack the required access level"
)


class StreamEnded(StreamApiError):
    pass


@dataclass(slots=True)
class LiveStats:
    connected: bool = False
    lines: int = 0
    forwarded: int = 0
    dropped: int = 0
    fallback_reason: str | None = None


def build_stream_client(config: Config) -> StreamApiClient:
    return StreamApiClient(
        base_url=config.stream_api_base_url,
        bearer_token=config.bearer_token or "",
        timeout=config.rest_timeout,
        connect_timeout=config.stream_connect_timeout_seconds,
        user_agent=config.user_agent,
    )


def _classify_failure(stage: str) -> str:
    if stage == STAGE_STREAM:
        return FALLBACK_STREAM_ERROR
    return FALLBACK_SETUP_ERROR


class LiveFeedAdapter:
    """Forwards the upstream filtered stream to one channel.

    Any failure, from a missing credential to a dropped stream, ends the live
    attempt for good and hands the channel to the fallback scheduler.
    """

    def __init__(
        self,
        *,
        config: Config,
        channel: Channel,
        fallback: FallbackScheduler,
        runlog: Runlog,
        normalizer: Normalizer | None = None,
        client_factory: Callable[[Config], StreamApiClient] | None = None,
        session_id: str | None = None,
    ) -> None:
        self._config = config
        self._channel = channel
        self._fallback = fallback
        self._runlog = runlog
        self._session_id = session_id
        self._normalizer = normalizer or Normalizer(runlog=runlog, session_id=session_id)
        self._client_factory = client_factory or build_stream_client
        self._client: StreamApiClient | None = None
        self._stats = LiveStats()

    @property
    def stats(self) -> LiveStats:
        return self._stats

    @property
    def normalizer(self) -> Normalizer:
        return self._normalizer

    @property
    def fallback(self) -> FallbackScheduler:
        return self._fallback

    async def run(self) -> str | None:
        """Deliver until the channel closes.

        Returns the fallback reason, or ``None`` when the live stream served
        the whole session.
        """
        if not self._config.has_credential():
            return await self._fall_back(FALLBACK_NO_CREDENTIAL)

        stage = STAGE_SETUP
        try:
            self._runlog.emit(
                "live_setup_start",
                session_id=self._session_id,
                bearer_token=mask_token(self._config.bearer_token),
            )
            client = self._client_factory(self._config)
            self._client = client
            rule = StreamRule(
                value=self._config.stream_rule_value,
                tag=self._config.stream_rule_tag,
            )
            await asyncio.to_thread(replace_stream_rules, client, [rule])
            if not self._channel.is_open:
                return None
            async with client.open_stream(STREAM_PARAMS) as lines:
                stage = STAGE_STREAM
                self._stats.connected = True
                self._runlog.emit("live_stream_open", session_id=self._session_id)
                await self._forward_until_closed(lines)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._stats.connected = False
            self._release_client()
            self._report_failure(stage, exc)
            return await self._fall_back(_classify_failure(stage), exc)
        finally:
            self._release_client()

    async def close(self) -> None:
        self._fallback.stop()
        self._release_client()

    async def _forward_until_closed(self, lines: AsyncIterator[str]) -> None:
        pump_task = asyncio.create_task(self._pump(lines))
        closed_task = asyncio.create_task(self._channel.wait_closed())
        try:
            done, _pending = await asyncio.wait(
                [pump_task, closed_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (pump_task, closed_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
        if pump_task in done and closed_task in done:
            # Client already closed, so a late stream error is dropped.
            if not pump_task.cancelled():
                pump_task.exception()
            return
        if pump_task in done:
            # Re-raises the stream error, if any.
            pump_task.result()
            if self._channel.is_open:
                raise StreamEnded("upstream stream ended")

    async def _pump(self, lines: AsyncIterator[str]) -> None:
        async for line in lines:
            self._stats.lines += 1
            record = self._normalizer.normalize_line(line)
            if record is None:
                continue
            if not await self._channel.send_json(record.to_payload()):
                self._stats.dropped += 1
                continue
            self._stats.forwarded += 1
            if self._config.log_records:
                self._runlog.emit(
                    "record_sent",
                    session_id=self._session_id,
                    source="live",
                    text=record.text,
                )

    async def _fall_back(self, reason: str, error: BaseException | None = None) -> str:
        self._stats.fallback_reason = reason
        if reason == FALLBACK_NO_CREDENTIAL:
            self._runlog.emit("live_unavailable", session_id=self._session_id, reason=reason)
        fields: dict[str, Any] = {"session_id": self._session_id, "reason": reason}
        fields.update(error_fields(error))
        self._runlog.emit("fallback_start", **fields)
        await self._fallback.run(self._channel)
        return reason

    def _report_failure(self, stage: str, error: BaseException) -> None:
        fields: dict[str, Any] = {"session_id": self._session_id}
        fields.update(error_fields(error))
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            fields["status_code"] = status_code
        if isinstance(error, StreamAuthError):
            fields["hint"] = AUTH_HINT
        record_type = "live_stream_error" if stage == STAGE_STREAM else "live_setup_error"
        self._runlog.emit(record_type, **fields)

    def _release_client(self) -> None:
        client = self._client
        if client is None:
            return
        self._client = None
        client.close()
