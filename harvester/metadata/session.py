"""
Metadata Session - получение info словаря от одного пира
========================================================

[STATES] Конечный автомат одной попытки:

    DIALING -> HANDSHAKING -> EXTENSION_HANDSHAKE -> REQUESTING_PIECES
            -> VALIDATING -> COMPLETE
    любое состояние -> FAILED

[FLOW]
1. TCP connect к пиру, объявившему info-hash
2. 68-байтный handshake с битом extension protocol
3. BEP-10 handshake: пир обязан объявить m.ut_metadata и metadata_size
4. BEP-9 запросы кусков по порядку, один запрос в полёте
5. SHA-1 склеенных кусков обязан совпасть с info-hash

[TIMEOUTS] У каждого ожидания свой таймаут, но все они обрезаются
общим дедлайном сессии. Отмена задачи - тоже переход в FAILED.

[ISOLATION] Сессия владеет своим соединением и буфером кусков.
Соединение закрывается при любом исходе. Повторов нет: каждая пара
(info_hash, peer) - одна независимая попытка.
"""

import time
import asyncio
import hashlib
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Tuple

from ..bencode import decode, ensure_dict
from ..errors import HarvesterError, ProtocolViolation, SessionTimeout, ValidationFailure
from .wire import (
    EXT_HANDSHAKE_ID, HANDSHAKE_SIZE, LOCAL_UT_METADATA_ID, MAX_MESSAGE_SIZE,
    MAX_METADATA_SIZE, MSG_EXTENDED, UT_DATA, UT_REJECT, UT_REQUEST,
    Handshake,
    build_extension_handshake, build_metadata_reject, build_metadata_request,
    expected_piece_size, generate_peer_id, parse_extension_handshake,
    parse_metadata_message, piece_count, read_frame, split_extended,
)

logger = logging.getLogger(__name__)


class SessionState(Enum):
    DIALING = "dialing"
    HANDSHAKING = "handshaking"
    EXTENSION_HANDSHAKE = "extension_handshake"
    REQUESTING_PIECES = "requesting_pieces"
    VALIDATING = "validating"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class SessionLimits:
    """Таймауты и лимиты одной сессии."""

    connect_timeout: float = 5.0
    handshake_timeout: float = 10.0
    piece_timeout: float = 10.0
    deadline: float = 30.0
    max_metadata_size: int = MAX_METADATA_SIZE
    max_message_size: int = MAX_MESSAGE_SIZE


class MetadataSession:
    """
    Одна попытка скачать метаданные у одного пира.

    [USAGE]
    ```python
    session = MetadataSession(info_hash, "10.0.0.7", 51413)
    try:
        info = await session.run()
    except HarvesterError:
        ...  # session.state == SessionState.FAILED
    ```

    Для тестов и in-memory пиров потоки можно передать явно:
    тогда DIALING пропускается.
    """

    def __init__(
        self,
        info_hash: bytes,
        ip: str,
        port: int,
        limits: Optional[SessionLimits] = None,
        peer_id: Optional[bytes] = None,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Optional[asyncio.StreamWriter] = None,
    ):
        self.info_hash = info_hash
        self.ip = ip
        self.port = port
        self.limits = limits or SessionLimits()
        self.peer_id = peer_id or generate_peer_id()

        self.state = SessionState.DIALING
        self.metadata_size = 0
        self.piece_count = 0
        self.pieces: Dict[int, bytes] = {}
        self.failure: Optional[BaseException] = None
        self.failed_in: Optional[SessionState] = None

        self._reader = reader
        self._writer = writer
        self._peer_ut_metadata = 0
        self._deadline = 0.0
        self.started_at = 0.0
        self.finished_at = 0.0

    @property
    def address(self) -> Tuple[str, int]:
        return (self.ip, self.port)

    @property
    def duration(self) -> float:
        end = self.finished_at or time.monotonic()
        return end - self.started_at if self.started_at else 0.0

    @property
    def is_complete(self) -> bool:
        """Все индексы 0..count-1 получены."""
        return self.piece_count > 0 and all(i in self.pieces for i in range(self.piece_count))

    def __str__(self) -> str:
        return f"{self.info_hash.hex()[:16]}...@{self.ip}:{self.port}"

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> Dict[bytes, Any]:
        """
        Пройти автомат до COMPLETE.

        Returns:
            Декодированный info словарь (SHA-1 уже проверен)

        Raises:
            SessionTimeout, ProtocolViolation, ValidationFailure, DecodeError,
            OSError (не удалось подключиться), asyncio.CancelledError
        """
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.limits.deadline
        self.started_at = time.monotonic()

        try:
            await self._dial()
            await self._handshake()
            await self._extension_handshake()
            await self._request_pieces()
            info = self._validate()
        except asyncio.CancelledError as e:
            self._fail(e)
            raise
        except asyncio.IncompleteReadError as e:
            self._fail(e)
            raise ProtocolViolation(
                f"connection closed during {self.failed_in.value}"
            ) from e
        except (HarvesterError, OSError) as e:
            self._fail(e)
            raise
        finally:
            self.finished_at = time.monotonic()
            await self._close()

        self._transition(SessionState.COMPLETE)
        logger.debug(
            f"[SESSION] {self} complete: {self.metadata_size} bytes "
            f"in {self.piece_count} pieces"
        )
        return info

    def _transition(self, state: SessionState) -> None:
        self.state = state

    def _fail(self, exc: BaseException) -> None:
        self.failed_in = self.state
        self.failure = exc
        self.state = SessionState.FAILED
        logger.debug(f"[SESSION] {self} failed in {self.failed_in.value}: {exc!r}")

    async def _wait(self, awaitable: Awaitable, timeout: float) -> Any:
        """Дождаться awaitable, но не дольше timeout и общего дедлайна."""
        remaining = self._deadline - asyncio.get_running_loop().time()
        budget = min(timeout, remaining)
        try:
            return await asyncio.wait_for(awaitable, timeout=max(budget, 0.0))
        except asyncio.TimeoutError:
            what = "deadline" if remaining <= timeout else f"{self.state.value} timeout"
            raise SessionTimeout(f"{self} exceeded {what}") from None

    async def _send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._wait(self._writer.drain(), self.limits.piece_timeout)

    async def _close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, asyncio.IncompleteReadError):
            pass

    # =========================================================================
    # States
    # =========================================================================

    async def _dial(self) -> None:
        self._transition(SessionState.DIALING)
        if self._reader is not None and self._writer is not None:
            return

        self._reader, self._writer = await self._wait(
            asyncio.open_connection(self.ip, self.port),
            self.limits.connect_timeout,
        )

    async def _handshake(self) -> None:
        self._transition(SessionState.HANDSHAKING)
        await self._send(Handshake.for_metadata(self.info_hash, self.peer_id).pack())

        data = await self._wait(
            self._reader.readexactly(HANDSHAKE_SIZE),
            self.limits.handshake_timeout,
        )
        remote = Handshake.unpack(data)

        if remote.info_hash != self.info_hash:
            raise ProtocolViolation(f"{self} answered with another info-hash")
        if not remote.supports_extensions:
            raise ProtocolViolation(f"{self} does not support the extension protocol")

    def _step_deadline(self, timeout: float) -> float:
        return asyncio.get_running_loop().time() + timeout

    async def _next_extended(self, until: float) -> Tuple[int, bytes]:
        """
        Следующее extended сообщение; keep-alive и прочие id пропускаются.

        until - абсолютный срок шага (loop.time()): пропущенные кадры
        его не продлевают.
        """
        loop = asyncio.get_running_loop()
        while True:
            message = await self._wait(
                read_frame(self._reader, self.limits.max_message_size),
                until - loop.time(),
            )
            if message is None:
                continue
            msg_id, payload = message
            if msg_id != MSG_EXTENDED:
                continue
            return split_extended(payload)

    async def _extension_handshake(self) -> None:
        self._transition(SessionState.EXTENSION_HANDSHAKE)
        await self._send(build_extension_handshake())

        until = self._step_deadline(self.limits.handshake_timeout)
        while True:
            ext_id, body = await self._next_extended(until)
            if ext_id == EXT_HANDSHAKE_ID:
                break

        remote = parse_extension_handshake(body, self.limits.max_metadata_size)
        self._peer_ut_metadata = remote.ut_metadata_id
        self.metadata_size = remote.metadata_size
        self.piece_count = piece_count(remote.metadata_size)

    async def _request_pieces(self) -> None:
        self._transition(SessionState.REQUESTING_PIECES)

        for index in range(self.piece_count):
            await self._send(build_metadata_request(self._peer_ut_metadata, index))
            self.pieces[index] = await self._receive_piece(index)

    async def _receive_piece(self, index: int) -> bytes:
        until = self._step_deadline(self.limits.piece_timeout)
        while True:
            ext_id, body = await self._next_extended(until)
            if ext_id != LOCAL_UT_METADATA_ID:
                continue

            message = parse_metadata_message(body)

            if message.msg_type == UT_REQUEST:
                # Мы ничего не раздаём
                await self._send(build_metadata_reject(self._peer_ut_metadata, message.piece))
                continue

            if message.msg_type == UT_REJECT:
                raise ProtocolViolation(f"{self} rejected piece {message.piece}")

            if message.msg_type != UT_DATA:
                continue

            if not 0 <= message.piece < self.piece_count:
                raise ProtocolViolation(f"{self} sent out-of-range piece {message.piece}")
            if message.piece != index:
                raise ProtocolViolation(f"{self} sent unsolicited piece {message.piece}")
            if message.total_size and message.total_size != self.metadata_size:
                raise ProtocolViolation(
                    f"{self} changed total_size {self.metadata_size} -> {message.total_size}"
                )

            expected = expected_piece_size(self.metadata_size, index)
            if len(message.data) != expected:
                raise ProtocolViolation(
                    f"{self} piece {index} has {len(message.data)} bytes, expected {expected}"
                )
            return message.data

    def _validate(self) -> Dict[bytes, Any]:
        self._transition(SessionState.VALIDATING)
        if not self.is_complete:
            raise ProtocolViolation(f"{self} metadata incomplete")

        raw = b"".join(self.pieces[i] for i in range(self.piece_count))
        if hashlib.sha1(raw).digest() != self.info_hash:
            raise ValidationFailure(f"{self} metadata hash mismatch")

        return ensure_dict(decode(raw, max_length=self.limits.max_metadata_size), "info")
