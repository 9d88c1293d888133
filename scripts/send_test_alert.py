#!/usr/bin/env python3
"""Send a test alert to ServiceNow using the configured service settings.

Usage::

    # Send the default CRITICAL test alert
    python scripts/send_test_alert.py

    # Custom config file
    python scripts/send_test_alert.py --config config/settings.yaml

    # Custom alert
    python scripts/send_test_alert.py --alert-id disk-full --level WARNING --message "disk 91%"
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import httpx
import structlog

from notifier.core.config import load_settings
from notifier.core.logging import setup_logging
from notifier.core.types import AlertLevel
from notifier.servicenow.exceptions import ServiceNowError
from notifier.servicenow.service import AlertTestOptions, ServiceNowService

logger = structlog.get_logger(__name__)

_DEFAULTS = AlertTestOptions()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Send a test alert to the ServiceNow Event Management API.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    parser.add_argument("--alert-id", default=_DEFAULTS.alert_id, help="Alert ID / message key")
    parser.add_argument("--source", default=_DEFAULTS.source, help="Event source")
    parser.add_argument(
        "--level",
        default=_DEFAULTS.level.name,
        choices=[level.name for level in AlertLevel],
        help="Alert level (default: CRITICAL)",
    )
    parser.add_argument("--message", default=_DEFAULTS.message, help="Event description")
    return parser.parse_args(argv)


async def run(
    args: argparse.Namespace,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Send one test alert. Returns the process exit code."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    service = ServiceNowService(settings.servicenow, transport=transport)
    options = AlertTestOptions(
        alert_id=args.alert_id,
        source=args.source,
        level=AlertLevel[args.level],
        message=args.message,
    )
    try:
        async with service:
            await service.test(options)
    except ServiceNowError:
        logger.exception("test_alert_failed", alert_id=options.alert_id)
        return 1

    logger.info("test_alert_sent", alert_id=options.alert_id, url=settings.servicenow.url)
    return 0


def main() -> None:
    code = asyncio.run(run(parse_args()))
    sys.exit(code)


if __name__ == "__main__":
    main()
