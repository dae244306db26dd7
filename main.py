#!/usr/bin/env python3
"""
DHT Metadata Harvester
======================

[SENSOR] Этот скрипт запускает пассивный сенсор BitTorrent DHT:
- Входит в DHT через известные роутеры и поддерживает routing table
- Слушает announce_peer от других узлов
- Для каждого объявленного info-hash забирает info словарь у пира
  через ut_metadata и проверяет его SHA-1
- Печатает проверенные записи в stdout, по одному JSON на строку

[STREAMS] stdout - только JSON-lines с записями; логи идут в stderr.

Использование:
    python main.py [--port PORT] [--workers N] [--bootstrap HOST:PORT]

Примеры:
    # Стандартный запуск
    python main.py --port 6881

    # Маленький пул и подробные логи
    python main.py --workers 64 --queue-size 1024 --log-level DEBUG

    # Запись результатов в файл
    python main.py > torrents.jsonl
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import suppress
from pathlib import Path
from typing import List, Optional, TextIO

# Загрузка переменных окружения из .env файла до чтения config
from dotenv import load_dotenv
load_dotenv()

from config import config, parse_address
from harvester import (
    CrawlerDriver,
    PeerBlacklist,
    ResultEmitter,
    RoutingTable,
    SessionLimits,
    SessionScheduler,
)
from harvester.monitoring import MetricsCollector, get_metrics

logger = logging.getLogger("harvester")


def configure_logging(level: str) -> None:
    """Логи в stderr, чтобы stdout оставался чистым JSON-lines потоком."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=config.logging.format,
        datefmt=config.logging.datefmt,
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="BitTorrent DHT metadata harvester",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Join the DHT on the default port and print records
  python main.py --port 6881

  # Use a private bootstrap router
  python main.py --bootstrap 10.0.0.2:6881

  # Keep the routing table between runs
  python main.py --nodes-file nodes.json
""",
    )
    parser.add_argument(
        "--host", "-H",
        type=str,
        default=config.dht.host,
        help=f"UDP host to bind to (default: {config.dht.host})",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=config.dht.port,
        help=f"UDP port for the DHT (default: {config.dht.port})",
    )
    parser.add_argument(
        "--bootstrap", "-b",
        type=str,
        action="append",
        default=None,
        help="Bootstrap router HOST:PORT (repeatable, replaces the defaults)",
    )
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=config.scheduler.workers,
        help=f"Concurrent metadata sessions (default: {config.scheduler.workers})",
    )
    parser.add_argument(
        "--queue-size",
        type=int,
        default=config.scheduler.queue_size,
        help=f"Announce queue capacity (default: {config.scheduler.queue_size})",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=config.metadata.deadline,
        help=f"Per-session deadline in seconds (default: {config.metadata.deadline})",
    )
    parser.add_argument(
        "--no-verify-tokens",
        action="store_true",
        help="Accept announce_peer without a valid token",
    )
    parser.add_argument(
        "--nodes-file",
        type=str,
        default=config.dht.nodes_file,
        help="JSON file to load/save the routing table",
    )
    parser.add_argument(
        "--stats-interval",
        type=float,
        default=config.logging.stats_interval,
        help="Seconds between statistics log lines (0 disables)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=config.logging.level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Logging level (default: {config.logging.level})",
    )
    return parser


# ============================================================================
# Routing table persistence
# ============================================================================

def load_routing_table(path: str) -> Optional[RoutingTable]:
    if not path or not Path(path).exists():
        return None
    try:
        data = json.loads(Path(path).read_text())
        table = RoutingTable.from_dict(data)
    except (OSError, ValueError, KeyError) as e:
        logger.warning(f"[MAIN] Ignoring unreadable nodes file {path}: {e}")
        return None
    logger.info(f"[MAIN] Loaded {len(table)} contacts from {path}")
    return table


def save_routing_table(path: str, table: RoutingTable) -> None:
    if not path:
        return
    try:
        Path(path).write_text(json.dumps(table.to_dict()))
    except OSError as e:
        logger.warning(f"[MAIN] Failed to save nodes file {path}: {e}")
        return
    logger.info(f"[MAIN] Saved {len(table)} contacts to {path}")


# ============================================================================
# Output and statistics
# ============================================================================

async def write_records(emitter: ResultEmitter, out: TextIO) -> None:
    """Печатать записи по одной JSON строке."""
    async for record in emitter.records():
        out.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        out.flush()


def format_stats(metrics: MetricsCollector, crawler: CrawlerDriver, scheduler: SessionScheduler) -> str:
    dropped = sum(
        v.value for v in metrics.counter("announces_dropped_total").get_all()
    )
    failed = sum(
        v.value for v in metrics.counter("sessions_failed_total").get_all()
    )
    return (
        f"[STATS] nodes={len(crawler.routing_table)} "
        f"pending={crawler.transport.pending_count} "
        f"announces={metrics.value('announces_received_total'):.0f} "
        f"dropped={dropped:.0f} "
        f"active={scheduler.active_sessions} "
        f"queued={scheduler.queue.qsize()} "
        f"completed={metrics.value('sessions_completed_total'):.0f} "
        f"failed={failed:.0f} "
        f"records={metrics.value('records_emitted_total'):.0f}"
    )


async def stats_loop(
    interval: float,
    metrics: MetricsCollector,
    crawler: CrawlerDriver,
    scheduler: SessionScheduler,
) -> None:
    while True:
        await asyncio.sleep(interval)
        logger.info(format_stats(metrics, crawler, scheduler))


# ============================================================================
# Entry point
# ============================================================================

async def main(argv: Optional[List[str]] = None) -> int:
    """
    Главная функция - точка входа.

    Returns:
        Код выхода процесса
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    bootstrap = config.dht.bootstrap_nodes
    if args.bootstrap:
        bootstrap = [parse_address(item) for item in args.bootstrap]

    metrics = get_metrics()
    emitter = ResultEmitter(metrics=metrics)
    blacklist = PeerBlacklist(
        ttl=config.scheduler.blacklist_ttl,
        max_entries=config.scheduler.blacklist_size,
    )
    scheduler = SessionScheduler(
        emitter,
        workers=args.workers,
        queue_size=args.queue_size,
        limits=SessionLimits(
            connect_timeout=config.metadata.connect_timeout,
            handshake_timeout=config.metadata.handshake_timeout,
            piece_timeout=config.metadata.piece_timeout,
            deadline=args.deadline,
            max_metadata_size=config.metadata.max_metadata_size,
        ),
        blacklist=blacklist,
        resolved_cache_size=config.scheduler.resolved_cache_size,
        metrics=metrics,
    )
    crawler = CrawlerDriver(
        announce_queue=scheduler.queue,
        host=args.host,
        port=args.port,
        routing_table=load_routing_table(args.nodes_file),
        bootstrap=bootstrap,
        refresh_interval=config.dht.refresh_interval,
        liveness_interval=config.dht.liveness_interval,
        stale_after=config.dht.stale_after,
        query_timeout=config.dht.query_timeout,
        max_failures=config.dht.ping_retries,
        max_pending=config.dht.max_pending_queries,
        verify_tokens=config.dht.verify_tokens and not args.no_verify_tokens,
        metrics=metrics,
    )

    try:
        await crawler.start()
    except OSError as e:
        logger.error(f"[MAIN] Cannot bind UDP {args.host}:{args.port}: {e}")
        return 1

    await scheduler.start()

    tasks = [asyncio.create_task(write_records(emitter, sys.stdout))]
    if args.stats_interval > 0:
        tasks.append(asyncio.create_task(
            stats_loop(args.stats_interval, metrics, crawler, scheduler)
        ))

    # Graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    logger.info("[MAIN] Harvesting. Press Ctrl+C to stop.")
    try:
        await shutdown_event.wait()
    finally:
        await crawler.stop()
        await scheduler.stop()
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        save_routing_table(args.nodes_file, crawler.routing_table)
        logger.info(format_stats(metrics, crawler, scheduler))
        logger.info("[MAIN] Shutdown complete")

    return 0


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
