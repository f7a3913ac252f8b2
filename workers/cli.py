"""
Worker CLI.

Usage:
    python -m workers                        # worker_count from settings
    python -m workers --workers 4
    python -m workers --config config/settings.yaml
    python -m workers --single               # one in-process worker, no supervisor
"""
from __future__ import annotations

import argparse
import asyncio
import logging

import structlog

# Load .env before any config is read
from dotenv import load_dotenv


def configure_logging(debug: bool = False):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if debug else logging.INFO),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m workers", description="Chat pipeline workers")
    parser.add_argument("--workers", type=int, default=None, help="Number of worker processes")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--single", action="store_true", help="Run one worker in this process")
    return parser


def main(argv: list[str] = None):
    load_dotenv()
    args = build_parser().parse_args(argv)

    from config.settings import load_settings
    from workers.supervisor import ClusterSupervisor, run_worker

    settings = load_settings(args.config)
    configure_logging(settings.debug)

    if args.single:
        asyncio.run(run_worker(args.config))
        return

    supervisor = ClusterSupervisor(
        worker_count=args.workers or settings.workers.worker_count,
        restart_delay=settings.workers.restart_delay,
        args=(args.config,),
    )
    supervisor.run()
