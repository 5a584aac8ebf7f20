from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

RECORD_KIND_TWEET = "tweet"
RECORD_KIND_INFO = "info"

LAT_MIN = -90.0
LAT_MAX = 90.0
LON_MIN = -180.0
LON_MAX = 180.0


def utc_now_iso() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def coordinates_in_range(latitude: float, longitude: float) -> bool:
    return LAT_MIN <= latitude <= LAT_MAX and LON_MIN <= longitude <= LON_MAX


@dataclass(slots=True)
class TweetRecord:
    latitude: float
    longitude: float
    text: str
    author_handle: str
    is_trending: bool
    hashtags: list[str] = field(default_factory=list)
    place_name: str = ""
    country_name: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    kind: str = RECORD_KIND_TWEET

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "lat": self.latitude,
            "lon": self.longitude,
            "text": self.text,
            "username": self.author_handle,
            "trending": self.is_trending,
            "hashtags": list(self.hashtags),
            "place": self.place_name,
            "country": self.country_name,
            "timestamp": self.timestamp,
        }


def build_info_payload(message: str) -> dict[str, Any]:
    return {"type": RECORD_KIND_INFO, "message": message}
