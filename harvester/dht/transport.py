"""
DHT Transport - UDP мультиплексор KRPC
======================================

[TRANSPORT] Один UDP сокет на всё:
- Исходящие query получают уникальный transaction id и таймаут
- Ответ с совпавшими tid и адресом разрешает ожидающий future
- Повторы и опоздавшие ответы с тем же tid игнорируются
- Входящие query обслуживаются по BEP-5

[PASSIVE GROWTH] Каждый узел, приславший нам query, становится
непроверенным кандидатом в routing table. Ответивший на наш
query узел добавляется как проверенный.

[ANNOUNCE] announce_peer порождает AnnounceEvent, который кладётся
в bounded asyncio.Queue планировщика через put_nowait. Если очередь
полна, событие теряется и учитывается в метрике: цикл DHT никогда
не блокируется.

[OWNERSHIP] Таблица транзакций и routing table принадлежат одному
event loop; синхронизация не нужна.

[ROBUSTNESS] Битые датаграммы молча отбрасываются (только счётчик).
Узел, не ответивший max_failures раз подряд, вытесняется.
"""

import asyncio
import random
import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..errors import DecodeError, KRPCErrorReply, QueryTimeout, ResourceExhausted
from ..events import AnnounceEvent
from ..monitoring import MetricsCollector, get_metrics
from .krpc import (
    ANNOUNCE_PEER, FIND_NODE, GET_PEERS, PING,
    ERROR_METHOD_UNKNOWN, ERROR_PROTOCOL,
    KRPCMessage, TokenManager,
    build_error, build_query, build_response,
    decode_compact_nodes, decode_compact_peers, encode_compact_nodes,
    parse_message,
)
from .routing import Contact, RoutingTable, ID_BYTES, K

logger = logging.getLogger(__name__)


# Константы транспорта
QUERY_TIMEOUT = 5.0  # Секунды ожидания ответа
MAX_FAILURES = 2  # Таймаутов подряд до вытеснения узла
MAX_PENDING = 1024  # Предел одновременных транзакций
TID_SPACE = 1 << 16  # 2-байтные transaction id

Address = Tuple[str, int]


@dataclass
class PendingQuery:
    """Исходящий query, ожидающий ответа."""

    tid: bytes
    method: bytes
    addr: Address
    node_id: Optional[bytes]
    future: asyncio.Future
    timer: asyncio.TimerHandle
    sent_at: float


class _KRPCProtocol(asyncio.DatagramProtocol):
    """asyncio протокол, пересылающий события в DHTTransport."""

    def __init__(self, owner: "DHTTransport"):
        self.owner = owner

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.owner._on_connection_made(transport)

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self.owner.datagram_received(data, addr)

    def error_received(self, exc: Exception) -> None:
        # ICMP port unreachable и подобное - нормальная ситуация для DHT
        logger.debug(f"[DHT] Socket error: {exc}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.owner._on_connection_lost(exc)


class DHTTransport:
    """
    KRPC транспорт поверх одного UDP сокета.

    [USAGE]
    ```python
    transport = DHTTransport(routing_table, announce_queue=scheduler.queue)
    await transport.start("0.0.0.0", 6881)

    response = await transport.ping(("67.215.246.10", 6881))
    nodes = await transport.find_node(addr, target_id)

    await transport.stop()
    ```
    """

    def __init__(
        self,
        routing_table: RoutingTable,
        announce_queue: Optional[asyncio.Queue] = None,
        query_timeout: float = QUERY_TIMEOUT,
        max_failures: int = MAX_FAILURES,
        max_pending: int = MAX_PENDING,
        verify_tokens: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            routing_table: Таблица маршрутизации (принадлежит этому транспорту)
            announce_queue: Bounded очередь планировщика для AnnounceEvent
            query_timeout: Таймаут ответа на query (секунды)
            max_failures: Таймаутов подряд до вытеснения узла
            max_pending: Предел одновременных исходящих query
            verify_tokens: Проверять токен в announce_peer
        """
        self.routing_table = routing_table
        self.local_id = routing_table.local_id
        self.announce_queue = announce_queue
        self.query_timeout = query_timeout
        self.max_failures = max_failures
        self.max_pending = max_pending
        self.verify_tokens = verify_tokens
        self.metrics = metrics or get_metrics()

        self.tokens = TokenManager()
        self._pending: Dict[bytes, PendingQuery] = {}
        self._next_tid = random.randrange(TID_SPACE)
        self._transport: Optional[asyncio.DatagramTransport] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    @property
    def local_address(self) -> Optional[Address]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self, host: str = "0.0.0.0", port: int = 6881) -> None:
        """
        Открыть UDP сокет.

        Raises:
            OSError: порт занят или нет прав (фатально при старте)
        """
        if self._transport is not None:
            return

        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: _KRPCProtocol(self),
            local_addr=(host, port),
        )
        logger.info(f"[DHT] Listening on {host}:{self.local_address[1]}")

    async def stop(self) -> None:
        """Закрыть сокет и отменить все ожидающие query."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._fail_all_pending(ConnectionError("transport closed"))
        logger.info("[DHT] Transport stopped")

    def _on_connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def _on_connection_lost(self, exc: Optional[Exception]) -> None:
        self._transport = None
        self._fail_all_pending(exc or ConnectionError("transport closed"))

    def _fail_all_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for query in pending.values():
            query.timer.cancel()
            if not query.future.done():
                query.future.set_exception(exc)
                # Никто может и не ждать: помечаем исключение как полученное
                query.future.exception()
        self.metrics.set("pending_queries", 0)

    def _send(self, data: bytes, addr: Address) -> None:
        if self._transport is None:
            return
        self._transport.sendto(data, addr)

    # =========================================================================
    # Outgoing queries
    # =========================================================================

    def _allocate_tid(self) -> bytes:
        for _ in range(TID_SPACE):
            tid = self._next_tid.to_bytes(2, "big")
            self._next_tid = (self._next_tid + 1) % TID_SPACE
            if tid not in self._pending:
                return tid
        raise ResourceExhausted("transaction id space exhausted")

    async def query(
        self,
        addr: Address,
        method: bytes,
        args: Optional[Dict[bytes, Any]] = None,
        node_id: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> Dict[bytes, Any]:
        """
        Отправить query и дождаться ответа.

        Args:
            addr: Адрес узла
            method: KRPC метод
            args: Аргументы (id добавляется автоматически)
            node_id: Ожидаемый node_id (для учёта неудач в routing table)
            timeout: Переопределить таймаут

        Returns:
            Словарь r из ответа

        Raises:
            QueryTimeout: ответа нет
            KRPCErrorReply: узел ответил ошибкой
            ResourceExhausted: слишком много транзакций в полёте
            ConnectionError: транспорт не запущен или закрыт
        """
        if self._transport is None:
            raise ConnectionError("transport is not running")
        if len(self._pending) >= self.max_pending:
            raise ResourceExhausted("too many pending queries")

        loop = asyncio.get_running_loop()
        tid = self._allocate_tid()
        future = loop.create_future()
        timer = loop.call_later(
            timeout if timeout is not None else self.query_timeout,
            self._expire, tid,
        )
        self._pending[tid] = PendingQuery(
            tid=tid,
            method=method,
            addr=addr,
            node_id=node_id,
            future=future,
            timer=timer,
            sent_at=time.monotonic(),
        )
        self.metrics.set("pending_queries", len(self._pending))

        payload = dict(args or {})
        payload[b"id"] = self.local_id
        self._send(build_query(tid, method, payload), addr)
        self.metrics.inc("queries_sent_total", labels={"method": method.decode()})

        try:
            return await future
        finally:
            # Отмена ожидающего: освобождаем tid сразу
            query = self._pending.get(tid)
            if query is not None and query.future is future:
                del self._pending[tid]
                query.timer.cancel()
                self.metrics.set("pending_queries", len(self._pending))

    def _expire(self, tid: bytes) -> None:
        query = self._pending.pop(tid, None)
        if query is None:
            return
        self.metrics.set("pending_queries", len(self._pending))
        self.metrics.inc("query_timeouts_total")

        if query.node_id is not None:
            if self.routing_table.mark_failed(query.node_id, self.max_failures):
                self.metrics.inc("nodes_evicted_total")

        if not query.future.done():
            query.future.set_exception(
                QueryTimeout(f"{query.method.decode()} to {query.addr[0]}:{query.addr[1]}")
            )

    async def ping(self, addr: Address, node_id: Optional[bytes] = None) -> Dict[bytes, Any]:
        return await self.query(addr, PING, node_id=node_id)

    async def find_node(
        self,
        addr: Address,
        target: bytes,
        node_id: Optional[bytes] = None,
    ) -> List[Contact]:
        """
        FIND_NODE к узлу.

        Returns:
            Узлы из ответа (уже добавлены в routing table как непроверенные)
        """
        response = await self.query(addr, FIND_NODE, {b"target": target}, node_id=node_id)
        return self._contacts_from(response)

    async def get_peers(
        self,
        addr: Address,
        info_hash: bytes,
        node_id: Optional[bytes] = None,
    ) -> Tuple[List[Address], List[Contact], Optional[bytes]]:
        """
        GET_PEERS к узлу.

        Returns:
            (peers, nodes, token)
        """
        response = await self.query(addr, GET_PEERS, {b"info_hash": info_hash}, node_id=node_id)
        token = response.get(b"token")
        return (
            decode_compact_peers(response.get(b"values")),
            self._contacts_from(response),
            token if isinstance(token, bytes) else None,
        )

    async def announce_peer(
        self,
        addr: Address,
        info_hash: bytes,
        port: int,
        token: bytes,
        implied_port: bool = True,
        node_id: Optional[bytes] = None,
    ) -> Dict[bytes, Any]:
        args = {
            b"info_hash": info_hash,
            b"port": port,
            b"token": token,
            b"implied_port": 1 if implied_port else 0,
        }
        return await self.query(addr, ANNOUNCE_PEER, args, node_id=node_id)

    def _contacts_from(self, response: Dict[bytes, Any]) -> List[Contact]:
        nodes = response.get(b"nodes")
        if not isinstance(nodes, bytes):
            return []
        contacts = []
        for node_id, ip, port in decode_compact_nodes(nodes):
            if node_id == self.local_id:
                continue
            contact = Contact(node_id=node_id, ip=ip, port=port)
            contacts.append(contact)
            self.routing_table.insert(contact)
        self.metrics.set("routing_table_nodes", len(self.routing_table))
        return contacts

    # =========================================================================
    # Incoming datagrams
    # =========================================================================

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self.metrics.inc("datagrams_received_total")
        try:
            message = parse_message(data)
        except DecodeError:
            self.metrics.inc("datagrams_malformed_total")
            return

        if message.is_query:
            self._handle_query(message, addr)
        else:
            self._handle_reply(message, addr)

    def _handle_reply(self, message: KRPCMessage, addr: Address) -> None:
        query = self._pending.get(message.tid)
        if query is None or query.addr != addr:
            # Опоздавший, повторный или чужой ответ
            return

        del self._pending[message.tid]
        query.timer.cancel()
        self.metrics.set("pending_queries", len(self._pending))

        if query.future.done():
            return

        if message.is_error:
            query.future.set_exception(
                KRPCErrorReply(message.error_code, message.error_message, addr)
            )
            return

        sender_id = message.sender_id
        if sender_id is not None and sender_id != self.local_id:
            self.routing_table.mark_verified(sender_id, addr[0], addr[1])
            self.metrics.set("routing_table_nodes", len(self.routing_table))

        query.future.set_result(message.response)

    def _handle_query(self, message: KRPCMessage, addr: Address) -> None:
        method = message.method
        self.metrics.inc(
            "queries_received_total",
            labels={"method": method.decode("ascii", "replace")},
        )

        sender_id = message.sender_id
        if sender_id is None:
            self._send(build_error(message.tid, ERROR_PROTOCOL, "Invalid id"), addr)
            return

        if sender_id != self.local_id:
            self.routing_table.insert(Contact(node_id=sender_id, ip=addr[0], port=addr[1]))

        if method == PING:
            self._send(build_response(message.tid, {b"id": self.local_id}), addr)
        elif method == FIND_NODE:
            self._on_find_node(message, addr)
        elif method == GET_PEERS:
            self._on_get_peers(message, addr)
        elif method == ANNOUNCE_PEER:
            self._on_announce_peer(message, addr, sender_id)
        else:
            self._send(build_error(message.tid, ERROR_METHOD_UNKNOWN, "Method Unknown"), addr)

    def _closest_nodes(self, target: bytes) -> bytes:
        return encode_compact_nodes(self.routing_table.closest(target, K))

    def _on_find_node(self, message: KRPCMessage, addr: Address) -> None:
        target = message.args.get(b"target")
        if not isinstance(target, bytes) or len(target) != ID_BYTES:
            self._send(build_error(message.tid, ERROR_PROTOCOL, "Invalid target"), addr)
            return

        self._send(build_response(message.tid, {
            b"id": self.local_id,
            b"nodes": self._closest_nodes(target),
        }), addr)

    def _on_get_peers(self, message: KRPCMessage, addr: Address) -> None:
        info_hash = message.args.get(b"info_hash")
        if not isinstance(info_hash, bytes) or len(info_hash) != ID_BYTES:
            self._send(build_error(message.tid, ERROR_PROTOCOL, "Invalid info_hash"), addr)
            return

        # Пиров мы не храним: всегда отвечаем узлами и токеном
        self._send(build_response(message.tid, {
            b"id": self.local_id,
            b"token": self.tokens.generate(addr[0]),
            b"nodes": self._closest_nodes(info_hash),
        }), addr)

    def _on_announce_peer(self, message: KRPCMessage, addr: Address, sender_id: bytes) -> None:
        args = message.args
        info_hash = args.get(b"info_hash")
        if not isinstance(info_hash, bytes) or len(info_hash) != ID_BYTES:
            self._send(build_error(message.tid, ERROR_PROTOCOL, "Invalid info_hash"), addr)
            return

        implied_port = args.get(b"implied_port")
        if isinstance(implied_port, int) and implied_port != 0:
            port = addr[1]
        else:
            port = args.get(b"port")
            if not isinstance(port, int) or not 0 < port < 65536:
                self._send(build_error(message.tid, ERROR_PROTOCOL, "Invalid port"), addr)
                return

        if self.verify_tokens and not self.tokens.verify(args.get(b"token"), addr[0]):
            self._send(build_error(message.tid, ERROR_PROTOCOL, "Bad token"), addr)
            return

        self._send(build_response(message.tid, {b"id": self.local_id}), addr)
        self._publish(AnnounceEvent(info_hash=info_hash, ip=addr[0], port=port))

    def _publish(self, event: AnnounceEvent) -> None:
        self.metrics.inc("announces_received_total")
        if self.announce_queue is None:
            return

        try:
            self.announce_queue.put_nowait(event)
        except asyncio.QueueFull:
            self.metrics.inc("announces_dropped_total", labels={"reason": "queue_full"})
            return

        logger.debug(f"[DHT] announce_peer {event}")
