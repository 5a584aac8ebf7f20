from __future__ import annotations

from http import HTTPStatus
from pathlib import Path
from urllib.parse import unquote, urlsplit

from websockets.datastructures import Headers
from websockets.http11 import Request, Response

DEFAULT_CONTENT_TYPE = "text/plain"

CONTENT_TYPES = {
    ".html": "text/html",
    ".css": "text/css",
    ".js": "text/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}

INDEX_PATHS = ("/", "/index.html")


def content_type_for(path: str | Path) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def _response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
    headers = Headers(
        [
            ("Content-Type", content_type),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ]
    )
    return Response(status.value, status.phrase, headers, body)


def is_websocket_upgrade(request: Request) -> bool:
    return request.headers.get("Upgrade", "").strip().lower() == "websocket"


class StaticFileResponder:
    """Serves files under ``root`` on the same port as the push channel."""

    def __init__(self, root: str | Path, *, index_file: str = "index.html") -> None:
        self._root = Path(root).resolve()
        self._index_file = index_file

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, request_path: str) -> Path | None:
        path = unquote(urlsplit(request_path).path)
        if path in INDEX_PATHS:
            path = "/" + self._index_file
        try:
            candidate = (self._root / path.lstrip("/")).resolve()
        except (OSError, ValueError):
            return None
        if candidate != self._root and self._root not in candidate.parents:
            return None
        return candidate

    def respond(self, request_path: str) -> Response:
        path = unquote(urlsplit(request_path).path)
        if path in INDEX_PATHS:
            index = self._root / self._index_file
            try:
                body = index.read_bytes()
            except OSError:
                return _response(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    b"Error loading index.html",
                    DEFAULT_CONTENT_TYPE,
                )
            return _response(HTTPStatus.OK, body, "text/html")
        target = self.resolve(request_path)
        if target is None or not target.is_file():
            return _response(HTTPStatus.NOT_FOUND, b"File not found", DEFAULT_CONTENT_TYPE)
        try:
            body = target.read_bytes()
        except OSError:
            return _response(HTTPStatus.NOT_FOUND, b"File not found", DEFAULT_CONTENT_TYPE)
        return _response(HTTPStatus.OK, body, content_type_for(target))

    def process_request(self, connection: object, request: Request) -> Response | None:
        if is_websocket_upgrade(request):
            return None
        return self.respond(request.path)
