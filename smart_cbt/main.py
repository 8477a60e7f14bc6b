"""
Smart CBT — Main Entry Point.

Runs the exam engine behind its FastAPI server.

Usage::

    python -m smart_cbt.main                      # in-memory stores
    python -m smart_cbt.main --persist            # JSON files under cbt_data/
    python -m smart_cbt.main --seed               # add default subjects if empty
    python -m smart_cbt.main --sink-url https://example.org/hook
"""

from __future__ import annotations

import argparse
import os
from typing import Any, Dict

from smart_cbt import __version__
from smart_cbt.core.config import CBTConfig
from smart_cbt.core.utils import get_logger

log = get_logger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"Smart CBT — computer-based testing server v{__version__}",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="API server port (default: 8000)",
    )
    parser.add_argument(
        "--duration", type=int, default=None,
        help="Exam duration in minutes (default: 90)",
    )
    parser.add_argument(
        "--sink-url", default=None,
        help="Webhook receiving one result record per finished session",
    )
    parser.add_argument(
        "--persist", action="store_true",
        help="Keep sessions and catalog in JSON files under the data folder",
    )
    parser.add_argument(
        "--seed", action="store_true",
        help="Add the default subject list when the catalog is empty",
    )
    return parser


def apply_args(args: argparse.Namespace) -> CBTConfig:
    """Push CLI overrides into the environment and build the config."""
    overrides: Dict[str, Any] = {}
    if args.port is not None:
        os.environ["CBT_API_PORT"] = str(args.port)
        overrides["api_port"] = args.port
    if args.duration is not None:
        os.environ["CBT_EXAM_DURATION_MINUTES"] = str(args.duration)
        overrides["exam_duration_minutes"] = args.duration
    if args.sink_url is not None:
        os.environ["CBT_SINK_URL"] = args.sink_url
        overrides["sink_url"] = args.sink_url
    if args.persist:
        os.environ["CBT_PERSIST"] = "true"
        overrides["persist"] = True
    # Field defaults were read from the environment at import time.
    return CBTConfig(**overrides)


def main() -> None:
    """CLI entry point."""
    args = build_parser().parse_args()
    config = apply_args(args)

    import uvicorn

    from smart_cbt.api.server import build_services, create_app

    services = build_services(config)
    if args.seed:
        services.catalog.seed_defaults()

    log.info("=" * 60)
    log.info("  SMART CBT v%s", __version__)
    log.info("  Exam: %d min | Violation limit: %d", config.exam_duration_minutes, config.violation_limit)
    log.info("  Storage: %s", config.base_folder if config.persist else "in-memory")
    log.info("  Result sink: %s", config.sink_url or "disabled")
    log.info("=" * 60)

    app = create_app(config, services)
    uvicorn.run(app, host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
