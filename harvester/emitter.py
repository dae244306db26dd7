"""
Result Emitter - публикация TorrentRecord
=========================================

[RECORD] Из проверенного info словаря берутся только:
- name (предпочтительно name.utf-8)
- files: [{path, length}] для многофайлового торрента
- length для однофайлового

[DISCARD] Словарь без name, без files и length или с битыми
записями файлов молча отбрасывается (debug лог + счётчик).

[ORDER] Записи публикуются в неограниченную asyncio.Queue в порядке
валидации. Каждая проверенная запись попадает в поток ровно один раз.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .bencode import get_int, get_list, get_str
from .errors import BencodeTypeError, DecodeError
from .monitoring import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    """Файл многофайлового торрента."""

    path: Tuple[str, ...]
    length: int

    def to_dict(self) -> Dict[str, Any]:
        return {"path": list(self.path), "length": self.length}


@dataclass(frozen=True)
class TorrentRecord:
    """
    Результат харвестинга.

    files заполнен для многофайлового торрента, length - для однофайлового.
    """

    info_hash: bytes
    name: str
    files: Tuple[FileEntry, ...] = field(default_factory=tuple)
    length: int = 0

    @property
    def total_size(self) -> int:
        if self.files:
            return sum(f.length for f in self.files)
        return self.length

    def to_dict(self) -> Dict[str, Any]:
        """JSON форма; пустые files и нулевой length опускаются."""
        result: Dict[str, Any] = {
            "infohash": self.info_hash.hex(),
            "name": self.name,
        }
        if self.files:
            result["files"] = [f.to_dict() for f in self.files]
        if self.length:
            result["length"] = self.length
        return result


def _utf8_variant(mapping: Dict[bytes, Any], key: str, getter) -> Any:
    """key.utf-8, если он есть и нужного типа, иначе None."""
    try:
        return getter(mapping, f"{key}.utf-8", None)
    except BencodeTypeError:
        return None


def _text(info: Dict[bytes, Any], key: str) -> Optional[str]:
    """Значение key.utf-8, иначе key."""
    value = _utf8_variant(info, key, get_str)
    if value is None:
        value = get_str(info, key, None)
    return value


def _file_entry(entry: Any) -> FileEntry:
    if not isinstance(entry, dict):
        raise DecodeError("file entry is not a dictionary", 0)

    parts = _utf8_variant(entry, "path", get_list)
    if parts is None or not all(isinstance(p, bytes) for p in parts):
        parts = get_list(entry, "path")
    if not all(isinstance(p, bytes) for p in parts):
        raise DecodeError("file path component is not a byte string", 0)

    length = get_int(entry, "length")
    if length < 0:
        raise DecodeError("negative file length", 0)

    return FileEntry(
        path=tuple(p.decode("utf-8", "replace") for p in parts),
        length=length,
    )


def build_record(info_hash: bytes, info: Dict[bytes, Any]) -> Optional[TorrentRecord]:
    """
    Построить TorrentRecord из info словаря.

    Returns:
        TorrentRecord или None, если полезных полей нет
    """
    try:
        name = _text(info, "name")
        if name is None:
            return None

        files = get_list(info, "files", None)
        if files:
            return TorrentRecord(
                info_hash=info_hash,
                name=name,
                files=tuple(_file_entry(entry) for entry in files),
            )

        length = get_int(info, "length", None)
        if length is None or length < 0:
            return None

        return TorrentRecord(
            info_hash=info_hash,
            name=name,
            length=length,
        )
    except DecodeError as e:
        logger.debug(f"[EMITTER] {info_hash.hex()} malformed info: {e}")
        return None


class ResultEmitter:
    """
    Потребитель проверенных словарей.

    [USAGE]
    ```python
    emitter = ResultEmitter()
    emitter.emit(info_hash, info)

    async for record in emitter.records():
        print(record.to_dict())
    ```
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics or get_metrics()
        self.queue: "asyncio.Queue[TorrentRecord]" = asyncio.Queue()

    def emit(self, info_hash: bytes, info: Dict[bytes, Any]) -> bool:
        """
        Опубликовать запись.

        Returns:
            False если словарь отброшен
        """
        record = build_record(info_hash, info)
        if record is None:
            self.metrics.inc("records_discarded_total")
            logger.debug(f"[EMITTER] Discarded {info_hash.hex()}: no usable fields")
            return False

        self.queue.put_nowait(record)
        self.metrics.inc("records_emitted_total")
        return True

    async def records(self) -> AsyncIterator[TorrentRecord]:
        """Бесконечный поток записей в порядке публикации."""
        while True:
            yield await self.queue.get()

    def drain(self) -> List[TorrentRecord]:
        """Забрать всё, что уже опубликовано."""
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out
