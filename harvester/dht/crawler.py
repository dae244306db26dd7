"""
Crawler Driver - поддержание присутствия в DHT
==============================================

[CRAWLER] CrawlerDriver владеет DHTTransport и routing table:
- start(): открыть сокет, bootstrap, запустить фоновые задачи
- stop(): отменить задачи, закрыть сокет

[BOOTSTRAP] Известные роутеры резолвятся через getaddrinfo,
им отправляется FIND_NODE к нашему ID. Пустая таблица в любой
момент работы означает повторный bootstrap.

[REFRESH] Каждые refresh_interval секунд:
- FIND_NODE к случайным ID в недонаполненных buckets
- периодический self-lookup (FIND_NODE к local_id)
- запросы идут к ближайшим к цели известным контактам

[LIVENESS] Устаревшие контакты проверяются ping; неответившие
вытесняются политикой повторов транспорта.

[PASSIVE] Краулер никогда не вызывает get_peers для роя: announce
приходят сами, потому что наш ID покрывает всё пространство.
"""

import asyncio
import socket
import logging
from typing import Iterable, List, Optional, Tuple

from ..errors import HarvesterError
from ..monitoring import MetricsCollector, get_metrics
from .routing import Contact, RoutingTable, STALE_AFTER, random_node_id
from .transport import DHTTransport

logger = logging.getLogger(__name__)


DEFAULT_BOOTSTRAP = (
    ("router.bittorrent.com", 6881),
    ("dht.transmissionbt.com", 6881),
    ("router.utorrent.com", 6881),
)

REFRESH_INTERVAL = 5.0  # Секунды между раундами обновления
SELF_LOOKUP_EVERY = 12  # Self-lookup каждые N раундов
LIVENESS_INTERVAL = 60.0
LOOKUP_FANOUT = 3  # Контактов на одну цель
MAX_PINGS_PER_ROUND = 32


class CrawlerDriver:
    """
    Краулер BitTorrent DHT.

    [USAGE]
    ```python
    queue = asyncio.Queue(maxsize=65536)
    async with CrawlerDriver(announce_queue=queue, port=6881) as crawler:
        event = await queue.get()
    ```
    """

    def __init__(
        self,
        announce_queue: Optional[asyncio.Queue] = None,
        host: str = "0.0.0.0",
        port: int = 6881,
        node_id: Optional[bytes] = None,
        routing_table: Optional[RoutingTable] = None,
        bootstrap: Iterable[Tuple[str, int]] = DEFAULT_BOOTSTRAP,
        refresh_interval: float = REFRESH_INTERVAL,
        liveness_interval: float = LIVENESS_INTERVAL,
        stale_after: float = STALE_AFTER,
        query_timeout: float = 5.0,
        max_failures: int = 2,
        max_pending: int = 1024,
        verify_tokens: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.host = host
        self.port = port
        self.bootstrap_nodes = list(bootstrap)
        self.refresh_interval = refresh_interval
        self.liveness_interval = liveness_interval
        self.stale_after = stale_after
        self.metrics = metrics or get_metrics()

        if routing_table is None:
            routing_table = RoutingTable(node_id or random_node_id())
        self.routing_table = routing_table
        self.transport = DHTTransport(
            self.routing_table,
            announce_queue=announce_queue,
            query_timeout=query_timeout,
            max_failures=max_failures,
            max_pending=max_pending,
            verify_tokens=verify_tokens,
            metrics=self.metrics,
        )

        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._rounds = 0

    @property
    def local_id(self) -> bytes:
        return self.routing_table.local_id

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "CrawlerDriver":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Открыть сокет и запустить фоновые задачи.

        Raises:
            OSError: не удалось привязать UDP порт
        """
        if self._running:
            return

        await self.transport.start(self.host, self.port)
        self._running = True

        self._tasks.append(asyncio.create_task(self._refresh_loop()))
        self._tasks.append(asyncio.create_task(self._liveness_loop()))

        logger.info(
            f"[CRAWLER] Started: id={self.local_id.hex()[:16]}..., "
            f"bootstrap={len(self.bootstrap_nodes)} routers"
        )

    async def stop(self) -> None:
        """Отменить фоновые задачи и закрыть сокет."""
        self._running = False

        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._tasks.clear()
        await self.transport.stop()

        logger.info("[CRAWLER] Stopped")

    # =========================================================================
    # Bootstrap
    # =========================================================================

    async def _resolve(self, host: str, port: int) -> List[Tuple[str, int]]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM,
            )
        except OSError as e:
            logger.debug(f"[CRAWLER] Cannot resolve {host}: {e}")
            return []
        return list({info[4][:2] for info in infos})

    async def bootstrap(self) -> int:
        """
        FIND_NODE к нашему ID через известные роутеры.

        Returns:
            Сколько контактов узнали
        """
        addresses: List[Tuple[str, int]] = []
        for host, port in self.bootstrap_nodes:
            addresses.extend(await self._resolve(host, port))

        if not addresses:
            logger.warning("[CRAWLER] No bootstrap routers resolved")
            return 0

        results = await asyncio.gather(
            *(self._lookup(addr, self.local_id) for addr in addresses)
        )
        learned = sum(results)
        logger.info(
            f"[CRAWLER] Bootstrap: {learned} contacts from {len(addresses)} routers, "
            f"table={len(self.routing_table)}"
        )
        return learned

    async def _lookup(
        self,
        addr: Tuple[str, int],
        target: bytes,
        node_id: Optional[bytes] = None,
    ) -> int:
        """Один FIND_NODE; сбои не выходят наружу."""
        try:
            contacts = await self.transport.find_node(addr, target, node_id=node_id)
        except (HarvesterError, ConnectionError) as e:
            logger.debug(f"[CRAWLER] find_node to {addr[0]}:{addr[1]} failed: {e}")
            return 0
        return len(contacts)

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> None:
        """Один раунд обновления таблицы."""
        if len(self.routing_table) == 0:
            await self.bootstrap()
            return

        targets = self.routing_table.sparse_bucket_targets()
        self._rounds += 1
        if self._rounds % SELF_LOOKUP_EVERY == 0:
            targets.append(self.local_id)

        lookups = []
        for target in targets:
            for contact in self.routing_table.closest(target, LOOKUP_FANOUT):
                lookups.append(self._lookup(contact.address, target, contact.node_id))

        if lookups:
            await asyncio.gather(*lookups)
            logger.debug(
                f"[CRAWLER] Refreshed {len(targets)} targets, "
                f"table={len(self.routing_table)}"
            )

        self.metrics.set("routing_table_nodes", len(self.routing_table))

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh()
                await asyncio.sleep(self.refresh_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[CRAWLER] Refresh error: {e}")
                await asyncio.sleep(self.refresh_interval)

    # =========================================================================
    # Liveness
    # =========================================================================

    async def _ping(self, contact: Contact) -> None:
        try:
            await self.transport.ping(contact.address, node_id=contact.node_id)
        except (HarvesterError, ConnectionError):
            pass  # Учтено в routing table через mark_failed

    async def check_liveness(self) -> int:
        """Пропинговать устаревшие контакты. Returns: сколько проверено."""
        stale = self.routing_table.stale_contacts(self.stale_after)[:MAX_PINGS_PER_ROUND]
        if stale:
            await asyncio.gather(*(self._ping(c) for c in stale))
            logger.debug(f"[CRAWLER] Pinged {len(stale)} stale contacts")
        return len(stale)

    async def _liveness_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.liveness_interval)
                await self.check_liveness()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[CRAWLER] Liveness error: {e}")

    def get_stats(self) -> dict:
        stats = self.routing_table.get_stats()
        stats["pending_queries"] = self.transport.pending_count
        return stats
