"""
Session Scheduler - bounded пул metadata сессий
===============================================

[BACKPRESSURE] Пределы:
- Bounded asyncio.Queue(maxsize=queue_size) для AnnounceEvent.
  Производитель (DHT транспорт) кладёт через put_nowait; полная
  очередь означает потерю события и счётчик, но никогда не блокировку.
- asyncio.Semaphore(workers) для одновременных сессий. Диспетчер
  захватывает слот ДО того, как забрать событие из очереди.
- Ёмкость очереди (SessionInbox) считает и активные сессии, поэтому
  при зависших сессиях принимается ровно queue_size + workers событий,
  даже если они пришли пачкой без единого await.

[SLOTS] Слот освобождается ровно один раз на сессию, когда её задача
завершается любым образом (успех, ошибка, таймаут, отмена).

[FILTERS] Перед запуском сессии событие отбрасывается, если:
- та же тройка (info_hash, ip, port) уже в работе
- info_hash уже успешно получен недавно (LRU)
- адрес пира во временном бане

[ISOLATION] Каждая сессия - отдельная задача со своим состоянием;
общего изменяемого состояния между сессиями нет.
"""

import time
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .blacklist import PeerBlacklist
from .emitter import ResultEmitter
from .errors import (
    DecodeError, HarvesterError, ProtocolViolation, SessionTimeout, ValidationFailure,
)
from .events import AnnounceEvent
from .metadata import MetadataSession, SessionLimits
from .monitoring import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)


DEFAULT_WORKERS = 1024
DEFAULT_QUEUE_SIZE = 65536
RESOLVED_CACHE_SIZE = 100_000

SessionFactory = Callable[[AnnounceEvent], Any]


def failure_reason(exc: BaseException) -> str:
    """Метка reason для sessions_failed_total."""
    if isinstance(exc, SessionTimeout):
        return "timeout"
    if isinstance(exc, ValidationFailure):
        return "validation"
    if isinstance(exc, ProtocolViolation):
        return "protocol"
    if isinstance(exc, DecodeError):
        return "decode"
    if isinstance(exc, OSError):
        return "unreachable"
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    return "internal"


# Исходы, после которых адрес пира банится
BAN_REASONS = frozenset({"validation", "unreachable", "protocol"})


class SessionInbox(asyncio.Queue):
    """
    Очередь событий, ёмкость которой включает запущенные сессии.

    [BURST] Производитель может вызвать put_nowait много раз подряд,
    не отдавая управление диспетчеру. Свободные слоты воркеров в этот
    момент ещё пусты, поэтому они учитываются здесь: ожидающих плюс
    активных никогда не больше queue_size + workers.
    """

    def __init__(self, queue_size: int, workers: int, active: Callable[[], int]):
        super().__init__(maxsize=queue_size)
        self.capacity = queue_size + workers
        self._active = active

    def full(self) -> bool:
        return self.qsize() + self._active() >= self.capacity


class SessionScheduler:
    """
    Планировщик metadata сессий.

    [USAGE]
    ```python
    emitter = ResultEmitter()
    scheduler = SessionScheduler(emitter, workers=1024, queue_size=65536)
    await scheduler.start()

    transport = DHTTransport(table, announce_queue=scheduler.queue)
    ...
    await scheduler.stop()
    ```
    """

    def __init__(
        self,
        emitter: ResultEmitter,
        workers: int = DEFAULT_WORKERS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        limits: Optional[SessionLimits] = None,
        blacklist: Optional[PeerBlacklist] = None,
        resolved_cache_size: int = RESOLVED_CACHE_SIZE,
        session_factory: Optional[SessionFactory] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            emitter: Куда публиковать проверенные словари
            workers: Предел одновременных сессий
            queue_size: Ёмкость очереди событий
            limits: Таймауты и лимиты сессий
            blacklist: Временный бан адресов (None - без бана)
            resolved_cache_size: Размер LRU полученных info-hash (0 - выкл)
            session_factory: Фабрика сессий (для тестов)
        """
        if workers < 1:
            raise ValueError("workers must be positive")
        if queue_size < 1:
            raise ValueError("queue_size must be positive")

        self.emitter = emitter
        self.workers = workers
        self.limits = limits or SessionLimits()
        self.blacklist = blacklist
        self.resolved_cache_size = resolved_cache_size
        self.metrics = metrics or get_metrics()
        self._session_factory = session_factory or self._default_session

        self.queue = SessionInbox(queue_size, workers, lambda: len(self._sessions))
        self._slots = asyncio.Semaphore(workers)
        self._inflight: Set[Tuple[bytes, str, int]] = set()
        self._resolved: "OrderedDict[bytes, None]" = OrderedDict()
        self._sessions: Set[asyncio.Task] = set()
        self._dispatcher: Optional[asyncio.Task] = None

    def _default_session(self, event: AnnounceEvent) -> MetadataSession:
        return MetadataSession(event.info_hash, event.ip, event.port, limits=self.limits)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self.is_running:
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        logger.info(
            f"[SCHEDULER] Started: workers={self.workers}, "
            f"queue={self.queue.maxsize}"
        )

    async def stop(self) -> None:
        """Остановить диспетчер и отменить все сессии."""
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)

        logger.info(f"[SCHEDULER] Stopped, cancelled {len(sessions)} sessions")

    async def join(self) -> None:
        """Дождаться обработки всех принятых событий."""
        await self.queue.join()

    # =========================================================================
    # Intake
    # =========================================================================

    def submit(self, event: AnnounceEvent) -> bool:
        """
        Принять событие без блокировки.

        Returns:
            False если событие отброшено (очередь полна или адрес в бане)
        """
        if self.blacklist is not None and event.address in self.blacklist:
            self._drop("blacklisted")
            return False

        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._drop("queue_full")
            return False

        self.metrics.set("queue_depth", self.queue.qsize())
        return True

    def _drop(self, reason: str) -> None:
        self.metrics.inc("announces_dropped_total", labels={"reason": reason})

    def _rejection(self, event: AnnounceEvent) -> Optional[str]:
        if event.key in self._inflight:
            return "duplicate"
        if event.info_hash in self._resolved:
            self._resolved.move_to_end(event.info_hash)
            return "resolved"
        if self.blacklist is not None and event.address in self.blacklist:
            return "blacklisted"
        return None

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch_loop(self) -> None:
        while True:
            # Слот берётся до события: зависшие сессии держат очередь полной
            await self._slots.acquire()
            try:
                event = await self.queue.get()
            except asyncio.CancelledError:
                self._slots.release()
                raise

            self.metrics.set("queue_depth", self.queue.qsize())

            reason = self._rejection(event)
            if reason is not None:
                self._drop(reason)
                self._slots.release()
                self.queue.task_done()
                continue

            self._spawn(event)

    def _spawn(self, event: AnnounceEvent) -> None:
        self._inflight.add(event.key)
        task = asyncio.create_task(self._run_session(event))
        self._sessions.add(task)
        task.add_done_callback(lambda t: self._on_session_done(t, event))

        self.metrics.inc("sessions_started_total")
        self.metrics.set("sessions_active", len(self._sessions))

    def _on_session_done(self, task: asyncio.Task, event: AnnounceEvent) -> None:
        # Вызывается ровно один раз, даже если задача отменена до старта
        self._sessions.discard(task)
        self._inflight.discard(event.key)
        self._slots.release()
        self.queue.task_done()
        self.metrics.set("sessions_active", len(self._sessions))

    async def _run_session(self, event: AnnounceEvent) -> None:
        session = self._session_factory(event)
        started = time.monotonic()

        try:
            info = await session.run()
        except asyncio.CancelledError as e:
            self._record_failure(event, e)
            raise
        except (HarvesterError, OSError) as e:
            self._record_failure(event, e)
            return
        except Exception as e:
            logger.error(f"[SCHEDULER] Session {event} crashed: {e!r}")
            self._record_failure(event, e)
            return
        finally:
            self.metrics.observe("session_duration_seconds", time.monotonic() - started)

        self.metrics.inc("sessions_completed_total")
        self._remember(event.info_hash)
        self.emitter.emit(event.info_hash, info)

    def _record_failure(self, event: AnnounceEvent, exc: BaseException) -> None:
        reason = failure_reason(exc)
        self.metrics.inc("sessions_failed_total", labels={"reason": reason})
        logger.debug(f"[SCHEDULER] Session {event} failed ({reason}): {exc!r}")

        if self.blacklist is not None and reason in BAN_REASONS:
            self.blacklist.ban(event.address)
            self.metrics.inc("peers_blacklisted_total")

    def _remember(self, info_hash: bytes) -> None:
        if self.resolved_cache_size <= 0:
            return
        self._resolved[info_hash] = None
        self._resolved.move_to_end(info_hash)
        while len(self._resolved) > self.resolved_cache_size:
            self._resolved.popitem(last=False)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "workers": self.workers,
            "active_sessions": len(self._sessions),
            "queue_depth": self.queue.qsize(),
            "queue_size": self.queue.maxsize,
            "resolved_cached": len(self._resolved),
            "blacklisted": len(self.blacklist) if self.blacklist is not None else 0,
        }
