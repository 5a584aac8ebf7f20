from __future__ import annotations

import random
import uuid
from typing import Callable

from .channel import Channel
from .config import Config
from .fallback import FallbackScheduler
from .live import LiveFeedAdapter
from .records import build_info_payload
from .runlog import Runlog
from .stream_api import StreamApiClient


def new_session_id() -> str:
    return uuid.uuid4().hex[:8]


class ConnectionSession:
    """Lifetime owner of one client's delivery mechanism.

    Greets the client, makes a single live attempt and lets the adapter swap
    in synthetic delivery on failure. Whatever is active is released when the
    channel closes.
    """

    def __init__(
        self,
        *,
        config: Config,
        channel: Channel,
        runlog: Runlog,
        client_factory: Callable[[Config], StreamApiClient] | None = None,
        rng: random.Random | None = None,
        fallback: FallbackScheduler | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or new_session_id()
        self._config = config
        self._channel = channel
        self._runlog = runlog
        self._fallback = fallback or FallbackScheduler(
            min_delay_ms=config.fallback_min_delay_ms,
            max_delay_ms=config.fallback_max_delay_ms,
            trending_probability=config.synthetic_trending_probability,
            rng=rng,
            runlog=runlog,
            session_id=self.session_id,
            log_records=config.log_records,
        )
        self._adapter = LiveFeedAdapter(
            config=config,
            channel=channel,
            fallback=self._fallback,
            runlog=runlog,
            client_factory=client_factory,
            session_id=self.session_id,
        )
        self.fallback_reason: str | None = None

    @property
    def adapter(self) -> LiveFeedAdapter:
        return self._adapter

    @property
    def fallback(self) -> FallbackScheduler:
        return self._fallback

    async def run(self) -> str | None:
        self._runlog.emit(
            "client_connect",
            session_id=self.session_id,
            remote_address=getattr(self._channel, "remote_address", None),
        )
        try:
            await self._channel.send_json(build_info_payload(self._config.greeting_message))
            self.fallback_reason = await self._adapter.run()
        finally:
            await self._adapter.close()
            self._runlog.emit(
                "client_disconnect",
                session_id=self.session_id,
                fallback_reason=self.fallback_reason,
                live=self._adapter.stats,
                synthetic=self._fallback.stats,
                normalizer=self._adapter.normalizer.counters(),
            )
        return self.fallback_reason
