from __future__ import annotations

import argparse
import os
from dataclasses import fields
from typing import Any

from dotenv import load_dotenv

from .config import Config, field_kind, mask_token, parse_field_value
from .runlog import Runlog
from .server import run_server


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        name = field.name.replace("_", "-")
        if field_kind(field.type)[0] == "bool":
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if isinstance(value, bool):
            overrides[field.name] = value
            continue
        overrides[field.name] = parse_field_value(field.type, value)
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="geo-relay")
    parser.add_argument("command", nargs="?", choices=["serve"], default="serve")
    _add_config_args(parser)
    parser.add_argument("--env-file", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    try:
        config = Config.from_env_and_cli(_cli_overrides(args), dict(os.environ))
    except ValueError as exc:
        parser.error(str(exc))
    runlog = Runlog(path=config.runlog_path)
    if config.has_credential():
        runlog.emit("config_loaded", bearer_token=mask_token(config.bearer_token))
    else:
        runlog.emit(
            "config_loaded",
            bearer_token=None,
            note="no stream credential configured; serving synthetic records",
        )
    try:
        return run_server(config, runlog)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
