# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Headless crawler: crawls every given server to completion, one after the
other, and writes a backup for each.

    hof-crawl --session-factory mygame.session:connect --threads 10 s1.example.net
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import importlib
import signal
import sys
from typing import List, Optional

from common.config import Config
from common.constants import CURRENT_VERSION, PROGRESS_LOG_SECONDS
from common.logging_setup import configure_app_logging, server_var
from crawler.queue import CrawlingOrder
from crawler.server import CrawlManager, ServerCrawl
from crawler.session import SessionFactory


def load_session_factory(target: str) -> SessionFactory:
    """Resolves `package.module:callable`."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"expected module:callable, got {target!r}")
    module = importlib.import_module(module_name)
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part)
    if not callable(factory):
        raise ValueError(f"{target!r} is not callable")
    return factory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hof-crawl",
        description="Crawl the Hall of Fame of one or more servers and write their backups.",
    )
    parser.add_argument("servers", nargs="+", metavar="URL", help="Server URLs to crawl.")
    parser.add_argument(
        "--session-factory",
        required=True,
        help="module:callable returning a GameSession for (server_url, name, password).",
    )
    parser.add_argument("--threads", type=int, default=None, help="Workers per server (default START_THREADS).")
    parser.add_argument("--backup-dir", default=None, help="Where .zhof backups are written.")
    parser.add_argument(
        "--order",
        default=None,
        choices=["random", "top_down", "bottom_up"],
        help="Order in which leaderboard pages are crawled.",
    )
    parser.add_argument(
        "--no-online",
        action="store_true",
        help="Do not seed from the shared online backup.",
    )
    parser.add_argument("--version", action="version", version=CURRENT_VERSION)
    return parser


async def _report_progress(server: ServerCrawl, logger) -> None:
    while True:
        await asyncio.sleep(PROGRESS_LOG_SECONDS)
        st = server.status()
        logger.info(
            "crawling %s",
            server.ident.url,
            extra={
                "crawled": st["crawled"],
                "remaining": st["remaining"],
                "threads": st["threads"],
                "failures": st["failures"],
            },
        )


async def crawl_server(
    server: ServerCrawl,
    factory: SessionFactory,
    threads: int,
    fetch_online: bool,
    stop: asyncio.Event,
    logger,
    order: Optional[str] = None,
) -> bool:
    server_var.set(server.ident.ident)
    try:
        await server.start(factory)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.error("could not init crawling on %s", server.ident.url)
        return False

    await server.restore(fetch_online=fetch_online)
    if order:
        server.set_order(CrawlingOrder.parse(order))
    server.set_threads(threads)
    server.start_checkpoints()

    progress = asyncio.create_task(_report_progress(server, logger))
    finished = asyncio.create_task(server.wait_finished())
    stopped = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({finished, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (progress, finished, stopped):
            task.cancel()
        await asyncio.gather(progress, finished, stopped, return_exceptions=True)
        await server.stop()

    try:
        path = await server.save_backup()
    except OSError as e:
        logger.error("could not write backup for %s: %s", server.ident.url, e)
        return False
    logger.info(
        "finished crawling %s -> %s",
        server.ident.url,
        path.name,
        extra={"crawled": len(server.player_db)},
    )
    return not stop.is_set()


async def run(args: argparse.Namespace, config: Config, factory: SessionFactory) -> int:
    logger = configure_app_logging()
    if args.backup_dir:
        config.BACKUP_DIR = args.backup_dir
    if args.order:
        config.CRAWL_ORDER = args.order
    threads = args.threads if args.threads is not None else config.START_THREADS
    threads = max(1, min(threads, config.MAX_THREADS or threads))

    logger.info("hof-crawl %s starting: %s", CURRENT_VERSION, ", ".join(args.servers))
    logger.debug("config: %s", config.as_dict())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    manager = CrawlManager(config, logger=logger.logger)
    ok = True
    try:
        for url in args.servers:
            if stop.is_set():
                break
            server = manager.get_or_create(url)
            done = await crawl_server(
                server,
                factory,
                threads,
                config.AUTO_FETCH_NEWEST and not args.no_online,
                stop,
                logger,
                order=args.order,
            )
            ok = ok and done
    finally:
        await manager.stop_all()
    logger.info("finished crawling all servers")
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.threads is not None and args.threads < 1:
        parser.error("--threads must be at least 1")
    try:
        factory = load_session_factory(args.session_factory)
    except (ImportError, AttributeError, ValueError) as e:
        parser.error(f"--session-factory: {e}")
    config = Config()
    try:
        return asyncio.run(run(args, config, factory))
    finally:
        config.db.close()


if __name__ == "__main__":
    sys.exit(main())
