from __future__ import annotations

import asyncio
from typing import Any

from websockets.asyncio.server import ServerConnection, serve

from .channel import WebSocketChannel
from .config import Config
from .runlog import Runlog
from .session import ConnectionSession
from .static_files import StaticFileResponder


def normalize_ws_keepalive(config: Config) -> tuple[float | None, float | None]:
    ping_interval: float | None = config.ws_ping_interval_seconds
    if ping_interval is not None and ping_interval <= 0:
        ping_interval = None
    ping_timeout: float | None = config.ws_ping_timeout_seconds
    if ping_timeout is not None and ping_timeout <= 0:
        ping_timeout = None
    return ping_interval, ping_timeout


class RelayServer:
    def __init__(self, config: Config, runlog: Runlog, *, client_factory=None) -> None:
        self._config = config
        self._runlog = runlog
        self._client_factory = client_factory
        self._static = StaticFileResponder(config.static_dir, index_file=config.index_file)
        self.sessions = 0

    @property
    def static(self) -> StaticFileResponder:
        return self._static

    async def handle(self, connection: ServerConnection) -> None:
        self.sessions += 1
        session = ConnectionSession(
            config=self._config,
            channel=WebSocketChannel(connection),
            runlog=self._runlog,
            client_factory=self._client_factory,
        )
        await session.run()

    async def serve_forever(self, ready: asyncio.Event | None = None) -> None:
        ping_interval, ping_timeout = normalize_ws_keepalive(self._config)
        serve_kwargs: dict[str, Any] = {
            "process_request": self._static.process_request,
            "ping_interval": ping_interval,
            "ping_timeout": ping_timeout,
        }
        async with serve(
            self.handle,
            self._config.host,
            self._config.port,
            **serve_kwargs,
        ) as server:
            self._runlog.emit(
                "server_start",
                url=f"http://{self._config.host}:{self._config.port}",
                static_dir=str(self._static.root),
                live_enabled=self._config.has_credential(),
            )
            if ready is not None:
                ready.set()
            await server.serve_forever()


def run_server(config: Config, runlog: Runlog) -> int:
    asyncio.run(RelayServer(config, runlog).serve_forever())
    return 0
