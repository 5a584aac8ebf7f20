from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import orjson

from .records import TweetRecord, coordinates_in_range, utc_now_iso
from .runlog import Runlog, error_fields

UNKNOWN_AUTHOR = "unknown"


def _as_bytes(raw: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw)
    return str(raw).encode("utf-8")


def bbox_center(bbox: object) -> tuple[float, float] | None:
    """Return ``(lat, lon)`` for a ``[west, south, east, north]`` box."""
    if not isinstance(bbox, (list, tuple)) or len(bbox) < 4:
        return None
    west, south, east, north = bbox[0], bbox[1], bbox[2], bbox[3]
    for value in (west, south, east, north):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"invalid bbox member: {value!r}")
    lon = (west + east) / 2
    lat = (south + north) / 2
    return float(lat), float(lon)


def _find_author(users: object, author_id: object) -> Mapping[str, Any] | None:
    if author_id is None or not isinstance(users, list):
        return None
    for user in users:
        if isinstance(user, dict) and user.get("id") == author_id:
            return user
    return None


def _extract_hashtags(entities: object) -> list[str]:
    if not isinstance(entities, dict):
        return []
    tags = entities.get("hashtags")
    if not isinstance(tags, list):
        return []
    hashtags: list[str] = []
    for tag in tags:
        if isinstance(tag, dict) and tag.get("tag") is not None:
            hashtags.append(str(tag["tag"]))
    return hashtags


@dataclass(slots=True)
class Normalizer:
    """Maps filtered-stream events onto :class:`TweetRecord`.

    ``normalize`` never raises; every event either yields a record or is
    counted under one of the skip/error counters.
    """

    runlog: Runlog | None = None
    session_id: str | None = None
    records: int = 0
    keepalives: int = 0
    decode_errors: int = 0
    schema_errors: int = 0
    skipped_no_payload: int = 0
    skipped_no_place: int = 0
    skipped_no_bbox: int = 0

    def normalize_line(self, raw: bytes | bytearray | memoryview | str) -> TweetRecord | None:
        payload_bytes = _as_bytes(raw)
        if not payload_bytes.strip():
            self.keepalives += 1
            return None
        try:
            event = orjson.loads(payload_bytes)
        except orjson.JSONDecodeError as exc:
            self.decode_errors += 1
            self._report(exc, payload_bytes[:200])
            return None
        return self.normalize(event)

    def normalize(self, event: object) -> TweetRecord | None:
        try:
            return self._normalize_event(event)
        except Exception as exc:
            self.schema_errors += 1
            self._report(exc, None)
            return None

    def counters(self) -> dict[str, int]:
        return {
            "records": self.records,
            "keepalives": self.keepalives,
            "decode_errors": self.decode_errors,
            "schema_errors": self.schema_errors,
            "skipped_no_payload": self.skipped_no_payload,
            "skipped_no_place": self.skipped_no_place,
            "skipped_no_bbox": self.skipped_no_bbox,
        }

    def _normalize_event(self, event: object) -> TweetRecord | None:
        if not isinstance(event, dict):
            raise TypeError(f"event must be an object, got {type(event).__name__}")
        tweet = event.get("data")
        includes = event.get("includes")
        if not tweet or not includes:
            self.skipped_no_payload += 1
            return None
        places = includes.get("places")
        if not places:
            self.skipped_no_place += 1
            return None
        place = places[0]
        geo = place.get("geo") or {}
        center = bbox_center(geo.get("bbox"))
        if center is None:
            self.skipped_no_bbox += 1
            return None
        lat, lon = center
        if not coordinates_in_range(lat, lon):
            raise ValueError(f"bbox center out of range: lat={lat} lon={lon}")

        user = _find_author(includes.get("users"), tweet.get("author_id"))
        username = f"@{user.get('username')}" if user is not None else UNKNOWN_AUTHOR
        hashtags = _extract_hashtags(tweet.get("entities"))
        record = TweetRecord(
            latitude=lat,
            longitude=lon,
            text=str(tweet.get("text") or ""),
            author_handle=username,
            is_trending=len(hashtags) > 0,
            hashtags=hashtags,
            place_name=str(place.get("full_name") or ""),
            country_name=str(place.get("country") or ""),
            timestamp=tweet.get("created_at") or utc_now_iso(),
        )
        self.records += 1
        return record

    def _report(self, error: BaseException, sample: bytes | None) -> None:
        if self.runlog is None:
            return
        fields: dict[str, Any] = {"session_id": self.session_id}
        fields.update(error_fields(error))
        if sample is not None:
            fields["sample"] = sample
        self.runlog.emit("normalize_error", **fields)
