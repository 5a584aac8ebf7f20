"""Geotagged post relay: live filtered stream with synthetic fallback."""

__all__ = [
    "channel",
    "cli",
    "config",
    "fallback",
    "live",
    "normalize",
    "records",
    "runlog",
    "server",
    "session",
    "static_files",
    "stream_api",
    "synthetic",
]
