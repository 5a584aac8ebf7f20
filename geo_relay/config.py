from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import types
import typing
from typing import Any, get_args, get_origin

ENV_PREFIX = "GEO_RELAY_"
BEARER_TOKEN_ENV = "TWITTER_BEARER_TOKEN"

DEFAULT_STATIC_DIR = str(Path(__file__).resolve().parent / "static")


TRUE_WORDS = frozenset({"1", "true", "yes", "y", "on"})
FALSE_WORDS = frozenset({"0", "false", "no", "n", "off"})
NULL_WORDS = frozenset({"", "none", "null"})


def parse_bool(value: str) -> bool:
    word = str(value).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"invalid bool: {value}")


_PARSERS = {"bool": parse_bool, "int": int, "float": float, "str": str}


def field_kind(field_type: Any) -> tuple[str, bool]:
    """Reduce a Config annotation to ``(kind, nullable)``.

    ``kind`` is one of ``bool``, ``int``, ``float`` or ``str``. Annotations may
    arrive as strings because of postponed evaluation.
    """
    if isinstance(field_type, str):
        parts = [part.strip() for part in field_type.split("|")]
        nullable = "None" in parts
        names = [part for part in parts if part != "None"]
        name = names[0] if len(names) == 1 else "str"
        return (name if name in _PARSERS else "str"), nullable
    nullable = False
    if get_origin(field_type) in (typing.Union, getattr(types, "UnionType", None)):
        members = [arg for arg in get_args(field_type) if arg is not type(None)]
        nullable = len(members) < len(get_args(field_type))
        field_type = members[0] if len(members) == 1 else str
    if field_type in (bool, int, float):
        return field_type.__name__, nullable
    return "str", nullable


def parse_field_value(field_type: Any, raw: str) -> Any:
    kind, nullable = field_kind(field_type)
    if nullable and str(raw).strip().lower() in NULL_WORDS:
        return None
    text = str(raw).strip() if nullable else raw
    return _PARSERS[kind](text)


def mask_token(token: str | None) -> str:
    if not token:
        return ""
    if len(token) <= 20:
        return "*" * len(token)
    return f"{token[:10]}...{token[-10:]}"


@dataclass
class Config:
    host: str = "localhost"
    port: int = 3000
    static_dir: str = DEFAULT_STATIC_DIR
    index_file: str = "index.html"
    stream_api_base_url: str = "https://api.twitter.com"
    bearer_token: str | None = None
    rest_timeout: float | None = None
    stream_connect_timeout_seconds: float | None = None
    user_agent: str = "geo-relay"
    stream_rule_value: str = "has:geo -is:retweet"
    stream_rule_tag: str = "geo-tweets"
    fallback_min_delay_ms: int = 2000
    fallback_max_delay_ms: int = 10000
    synthetic_trending_probability: float = 0.2
    ws_ping_interval_seconds: float = 20.0
    ws_ping_timeout_seconds: float = 20.0
    runlog_path: str | None = None
    log_records: bool = False
    greeting_message: str = "Connected to WebSocket server"

    def has_credential(self) -> bool:
        return bool(self.bearer_token and self.bearer_token.strip())

    def validate(self) -> "Config":
        if self.port < 0 or self.port > 65535:
            raise ValueError(f"invalid port: {self.port}")
        if self.fallback_min_delay_ms < 0:
            raise ValueError("fallback_min_delay_ms must be >= 0")
        if self.fallback_max_delay_ms <= self.fallback_min_delay_ms:
            raise ValueError("fallback_max_delay_ms must be > fallback_min_delay_ms")
        if not 0.0 <= self.synthetic_trending_probability <= 1.0:
            raise ValueError("synthetic_trending_probability must be within [0, 1]")
        return self

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    if field_kind(field.type)[1]:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls()
        token = env.get(BEARER_TOKEN_ENV)
        if token is not None:
            cfg.bearer_token = token.strip() or None
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            setattr(cfg, field.name, parse_field_value(field.type, env[env_key]))
        cfg.apply_overrides(cli_overrides)
        if cfg.bearer_token is not None and not cfg.bearer_token.strip():
            cfg.bearer_token = None
        return cfg.validate()
