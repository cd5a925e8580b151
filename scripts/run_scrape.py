#!/usr/bin/env python3
"""Run a full catalog scrape of the review site with a Rich summary."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from core.cancellation import CancellationToken  # noqa: E402
from core.operation_tracker import OperationType  # noqa: E402
from core.orchestrator import create_orchestrator  # noqa: E402
from database.manager import DatabaseManager  # noqa: E402
from database.memory_store import InMemoryCatalogStore  # noqa: E402
from network.http_client import CatalogHttpClient  # noqa: E402
from utils.checkpoint_store import JsonCheckpointStore  # noqa: E402
from utils.config_loader import ScraperSettings, load_settings  # noqa: E402
from utils.error_handling import ScraperError  # noqa: E402
from utils.logger import get_logger, setup_logger  # noqa: E402
from utils.rich_helpers import get_console, render_error, render_run_summary  # noqa: E402

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scrape brands and products from the review site")
    parser.add_argument(
        "--operation-type",
        choices=[item.value for item in OperationType],
        default=OperationType.FULL_REFRESH.value,
        help="Kind of operation recorded in scraping metadata",
    )
    parser.add_argument("--max-concurrent-brands", type=int, help="Brand jobs per batch")
    parser.add_argument("--max-concurrent-products", type=int, help="Product jobs per batch")
    parser.add_argument("--max-retries", type=int, help="Attempts per job before it fails")
    parser.add_argument(
        "--retry-delay",
        type=float,
        help="Base delay in seconds between job attempts (0 = immediate)",
    )
    parser.add_argument("--timeout", type=float, help="Abort the operation after N seconds")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Keep results in memory instead of writing to the database",
    )
    parser.add_argument("--config", type=Path, help="Path to JSON settings file")
    parser.add_argument("--checkpoint-dir", type=Path, help="Directory for checkpoint files")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the latest checkpoint, skipping work it already recorded",
    )
    parser.add_argument(
        "--brand",
        action="append",
        dest="brands",
        metavar="SLUG",
        help="Scrape only this brand (repeatable); skips brand discovery",
    )
    parser.add_argument("--progress", action="store_true", help="Show tqdm progress bars")
    parser.add_argument("--log-level", help="Logging level (default from settings)")
    return parser


def settings_from_args(args: argparse.Namespace) -> ScraperSettings:
    return load_settings(
        str(args.config) if args.config else None,
        max_concurrent_brands=args.max_concurrent_brands,
        max_concurrent_products=args.max_concurrent_products,
        max_retries=args.max_retries,
        retry_base_delay=args.retry_delay,
        operation_timeout=args.timeout,
        checkpoint_dir=str(args.checkpoint_dir) if args.checkpoint_dir else None,
        show_progress=True if args.progress else None,
        log_level=args.log_level,
    )


def _install_signal_handlers(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable on some platforms
            pass


async def run(
    settings: ScraperSettings,
    operation_type: str,
    dry_run: bool = False,
    brands: Optional[List[str]] = None,
    resume: bool = False,
) -> Dict[str, Any]:
    checkpoint_store = JsonCheckpointStore(settings.checkpoint_dir) if settings.checkpoint_dir else None
    storage = InMemoryCatalogStore() if dry_run else DatabaseManager.from_settings(settings)
    if isinstance(storage, DatabaseManager):
        await storage.init_pool()

    token = CancellationToken()
    _install_signal_handlers(token)

    try:
        async with CatalogHttpClient.from_settings(settings) as client:
            orchestrator = create_orchestrator(
                settings=settings,
                storage=storage,
                fetcher=client,
                checkpoint_sink=checkpoint_store,
            )
            if resume and checkpoint_store is not None:
                checkpoint = checkpoint_store.load_latest()
                if checkpoint is not None:
                    orchestrator.restore_checkpoint(checkpoint)

            statistics = await orchestrator.run_operation(
                operation_type,
                cancel_token=token,
                timeout=settings.operation_timeout,
                brand_slugs=brands,
                resume=resume,
            )
            statistics["http"] = client.get_stats()
            return statistics
    finally:
        if isinstance(storage, DatabaseManager):
            await storage.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ScraperError as exc:
        render_error("Invalid configuration", details=str(exc))
        return 2

    setup_logger(
        None,
        level=settings.log_level,
        log_file=settings.log_file,
        structured_file=settings.structured_log_file,
    )

    console = get_console()
    console.print(f"[bold]Scraping[/bold] {settings.base_url} ({args.operation_type})")

    try:
        statistics = asyncio.run(
            run(
                settings,
                args.operation_type,
                dry_run=args.dry_run,
                brands=args.brands,
                resume=args.resume,
            )
        )
    except asyncio.TimeoutError:
        render_error(f"Operation timed out after {settings.operation_timeout}s")
        return 1
    except (ScraperError, ConnectionError) as exc:
        logger.error(f"Scraping operation failed: {exc}")
        render_error("Scraping operation failed", details=str(exc))
        return 1

    render_run_summary(statistics, console=console)
    return 0 if not statistics.get("cancelled") else 130


if __name__ == "__main__":
    sys.exit(main())
