from __future__ import annotations

from typing import Any, Protocol

import orjson
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State


class Channel(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> bool: ...

    async def wait_closed(self) -> None: ...


def encode_message(payload: dict[str, Any]) -> str:
    return orjson.dumps(payload).decode("utf-8")


class WebSocketChannel:
    """Per-client push channel over a ``websockets`` server connection.

    ``send_json`` reports whether the message was handed to the transport; a
    closed connection is a silent ``False``, never an error.
    """

    def __init__(self, connection: Any) -> None:
        self._connection = connection
        self.sent = 0
        self.dropped = 0

    @property
    def connection(self) -> Any:
        return self._connection

    @property
    def remote_address(self) -> Any:
        return getattr(self._connection, "remote_address", None)

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def send_json(self, payload: dict[str, Any]) -> bool:
        if not self.is_open:
            self.dropped += 1
            return False
        try:
            await self._connection.send(encode_message(payload))
        except ConnectionClosed:
            self.dropped += 1
            return False
        self.sent += 1
        return True

    async def wait_closed(self) -> None:
        await self._connection.wait_closed()
