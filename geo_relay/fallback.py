from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from .channel import Channel
from .records import TweetRecord
from .runlog import Runlog
from .synthetic import DEFAULT_TRENDING_PROBABILITY, generate_record

DEFAULT_MIN_DELAY_MS = 2000
DEFAULT_MAX_DELAY_MS = 10000


@dataclass(slots=True)
class FallbackStats:
    ticks: int = 0
    sent: int = 0
    skipped: int = 0


class FallbackScheduler:
    """Pushes synthetic records to one channel on a randomized cadence.

    The first record goes out immediately; afterwards one record per delay
    drawn from ``[min_delay_ms, max_delay_ms)``. The loop ends once the channel
    reports closed or :meth:`stop` is called.
    """

    def __init__(
        self,
        *,
        min_delay_ms: int = DEFAULT_MIN_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        trending_probability: float = DEFAULT_TRENDING_PROBABILITY,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        generator: Callable[..., TweetRecord] | None = None,
        runlog: Runlog | None = None,
        session_id: str | None = None,
        log_records: bool = False,
    ) -> None:
        if min_delay_ms < 0:
            raise ValueError("min_delay_ms must be >= 0")
        if max_delay_ms <= min_delay_ms:
            raise ValueError("max_delay_ms must be > min_delay_ms")
        self._min_delay_ms = min_delay_ms
        self._max_delay_ms = max_delay_ms
        self._trending_probability = trending_probability
        self._rng = rng or random.Random()
        self._sleep = sleep or self._wait_or_stop
        self._generator = generator or generate_record
        self._runlog = runlog
        self._session_id = session_id
        self._log_records = log_records
        self._stop_event = asyncio.Event()
        self._stats = FallbackStats()
        self.running = False

    @property
    def stats(self) -> FallbackStats:
        return self._stats

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def next_delay_ms(self) -> float:
        delay = self._min_delay_ms + self._rng.random() * (
            self._max_delay_ms - self._min_delay_ms
        )
        return min(delay, self._max_delay_ms - 1e-6)

    async def run(self, channel: Channel) -> FallbackStats:
        self.running = True
        try:
            await self._deliver(channel)
            while not self._stop_event.is_set() and channel.is_open:
                await self._sleep(self.next_delay_ms() / 1000.0)
                if self._stop_event.is_set():
                    break
                await self._deliver(channel)
                if not channel.is_open:
                    break
        finally:
            self.running = False
        return self._stats

    async def _deliver(self, channel: Channel) -> None:
        self._stats.ticks += 1
        if not channel.is_open:
            self._stats.skipped += 1
            return
        record = self._generator(
            self._rng, trending_probability=self._trending_probability
        )
        if not await channel.send_json(record.to_payload()):
            self._stats.skipped += 1
            return
        self._stats.sent += 1
        if self._log_records and self._runlog is not None:
            self._runlog.emit(
                "record_sent",
                session_id=self._session_id,
                source="synthetic",
                text=record.text,
            )

    async def _wait_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
