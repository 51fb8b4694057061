#!/usr/bin/env python
"""
Standalone webhook worker process.

Processes jobs from the webhook queue until SIGINT/SIGTERM, then drains
in-flight jobs and exits.

Usage:
    WEBHOOK_PROCESSOR=payments.webhooks:processor python -m webhook_queue.worker
    python -m webhook_queue.worker --processor payments.webhooks:processor --concurrency 4
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from webhook_queue.config import Settings, get_settings
from webhook_queue.core.logging import configure_logging
from webhook_queue.core.sentry import init_sentry
from webhook_queue.queue import QueueConnectionError, WebhookQueue, load_processor

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m webhook_queue.worker",
        description="Process payment webhook jobs from Redis",
    )
    parser.add_argument(
        "--processor",
        help="Processor import path 'module:attribute' (default: WEBHOOK_PROCESSOR)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Jobs processed concurrently (default: WEBHOOK_CONCURRENCY)",
    )
    return parser


async def run_worker(settings: Settings, stop: Optional[asyncio.Event] = None) -> int:
    """Run the queue worker until `stop` is set. Returns an exit code."""
    if not settings.webhook_processor:
        logger.error("No processor configured (set WEBHOOK_PROCESSOR or --processor)")
        return 2

    try:
        processor = load_processor(settings.webhook_processor)
    except (ImportError, ValueError, TypeError) as e:
        logger.error(
            "Failed to load processor",
            processor=settings.webhook_processor,
            error=str(e),
        )
        return 2

    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform / not in the main thread
            pass

    queue = WebhookQueue(settings, processor=processor)
    try:
        await queue.initialize()
    except QueueConnectionError as e:
        logger.error("Worker could not connect to Redis", error=str(e))
        return 1

    logger.info(
        "Webhook worker running",
        queue=queue.name,
        worker_id=queue.worker.worker_id if queue.worker else None,
        processor=settings.webhook_processor,
    )
    try:
        await stop.wait()
    finally:
        logger.info("Webhook worker stopping")
        await queue.shutdown()
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.processor:
        overrides["webhook_processor"] = args.processor
    if args.concurrency:
        overrides["webhook_concurrency"] = args.concurrency
    settings = get_settings()
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level, settings.log_json)
    init_sentry(settings, component="worker")

    sys.exit(asyncio.run(run_worker(settings)))


if __name__ == "__main__":
    main()
