"""Command-line entry point: ``issue-hunter`` or ``python -m issue_hunter``."""

from __future__ import annotations

import argparse
import dataclasses
import pathlib

from dotenv import load_dotenv

from issue_hunter.app import create_app
from issue_hunter.config import AppConfig, apply_config_file


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="issue-hunter",
        description="Watch GitHub repositories and hand new issues to the coding agent.",
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file to load (default: ./.env)")
    parser.add_argument("--config", default="", help="YAML file with tunables")
    parser.add_argument("--host", default="", help="override SERVER_HOST")
    parser.add_argument("--port", type=int, default=0, help="override SERVER_PORT")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    env_path = pathlib.Path(args.env_file)
    if env_path.is_file():
        load_dotenv(env_path)

    config = AppConfig.from_env()
    if args.config:
        config = apply_config_file(config, args.config)
    overrides = {}
    if args.host:
        overrides["server_host"] = args.host
    if args.port:
        overrides["server_port"] = args.port
    if overrides:
        config = dataclasses.replace(config, **overrides)

    app = create_app(config)
    app.run(host=config.server_host, port=config.server_port, debug=config.debug)


if __name__ == "__main__":
    main()
