"""
Bencode Codec
=============

[BENCODE] Бинарный формат BitTorrent (BEP-3):
- Integer:    i<digits>e         (i42e, i-7e)
- ByteString: <len>:<bytes>      (4:spam)
- List:       l<values>e
- Dictionary: d<key><value>...e  (ключи - byte strings)

[CANONICAL] При кодировании ключи словаря сортируются лексикографически
по байтам. Это обязательно: info-hash считается от канонического
представления словаря.

[SAFETY] Декодер рассчитан на недоверенный вход из сети:
- Один проход вперёд, без backtracking
- Вызывающая сторона задаёт max_length: заявленные длины строк
  проверяются до чтения, мы никогда не читаем за пределы лимита
- Ограничена глубина вложенности и длина чисел
- Любая ошибка -> DecodeError со смещением байта

[TYPES] Декодированное значение - явное объединение
int | bytes | list | dict[bytes, ...]. Для доступа к полям используются
типизированные аксессоры (get_int, get_bytes, ...), которые бросают
BencodeTypeError вместо неявного приведения типов.
"""

import logging
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

from .errors import BencodeTypeError, DecodeError

logger = logging.getLogger(__name__)


BencodeValue = Union[int, bytes, List[Any], Dict[bytes, Any]]

# Ограничения декодера
MAX_DEPTH = 64            # Максимальная вложенность списков/словарей
MAX_INT_DIGITS = 256      # Максимальная длина числа в символах
MAX_LENGTH_DIGITS = 10    # Максимальная длина префикса строки (<len>:)

_DIGITS = b"0123456789"
_MISSING = object()


# ============================================================================
# Readers
# ============================================================================

class _BufferReader:
    """Чтение из bytes-подобного буфера без копирования всего буфера."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self._view = memoryview(data)
        self._pos = 0

    def read(self, n: int) -> bytes:
        chunk = self._view[self._pos:self._pos + n].tobytes()
        self._pos += len(chunk)
        return chunk


class _StreamReader:
    """Чтение из файлоподобного объекта; короткие чтения дочитываются."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream

    def read(self, n: int) -> bytes:
        parts = []
        remaining = n
        while remaining > 0:
            chunk = self._stream.read(remaining)
            if not chunk:
                break
            parts.append(chunk)
            remaining -= len(chunk)
        return b"".join(parts)


# ============================================================================
# Decoder
# ============================================================================

class BencodeDecoder:
    """
    Однопроходный декодер bencode с ограничением длины.

    [USAGE]
    ```python
    decoder = BencodeDecoder.from_bytes(payload, max_length=len(payload))
    header = decoder.decode_value()
    trailer = payload[decoder.offset:]
    ```
    """

    def __init__(self, reader: Any, max_length: int):
        """
        Args:
            reader: Объект с методом read(n)
            max_length: Сколько байт разрешено прочитать всего
        """
        if max_length < 0:
            raise ValueError("max_length must be non-negative")
        self._reader = reader
        self.max_length = max_length
        self.offset = 0

    @classmethod
    def from_bytes(
        cls,
        data: Union[bytes, bytearray, memoryview],
        max_length: Optional[int] = None,
    ) -> "BencodeDecoder":
        limit = len(data) if max_length is None else min(max_length, len(data))
        return cls(_BufferReader(data), limit)

    @classmethod
    def from_stream(cls, stream: BinaryIO, max_length: int) -> "BencodeDecoder":
        return cls(_StreamReader(stream), max_length)

    def _take(self, n: int) -> bytes:
        """Прочитать ровно n байт или упасть с DecodeError."""
        if self.offset + n > self.max_length:
            raise DecodeError("unexpected end of data", self.max_length)
        chunk = self._reader.read(n)
        if len(chunk) != n:
            raise DecodeError("unexpected end of data", self.offset + len(chunk))
        self.offset += n
        return chunk

    def decode_value(self) -> BencodeValue:
        """Декодировать одно значение начиная с текущего смещения."""
        start = self.offset
        token = self._take(1)
        return self._decode_token(token, start, 0)

    def _decode_token(self, token: bytes, start: int, depth: int) -> BencodeValue:
        if depth > MAX_DEPTH:
            raise DecodeError("nesting too deep", start)

        if token == b"i":
            return self._decode_int(start)

        if token == b"l":
            items: List[Any] = []
            while True:
                item_start = self.offset
                inner = self._take(1)
                if inner == b"e":
                    return items
                items.append(self._decode_token(inner, item_start, depth + 1))

        if token == b"d":
            result: Dict[bytes, Any] = {}
            while True:
                key_start = self.offset
                inner = self._take(1)
                if inner == b"e":
                    return result
                if inner not in _DIGITS:
                    raise DecodeError("dictionary key must be a byte string", key_start)
                key = self._decode_bytes(inner, key_start)
                if key in result:
                    raise DecodeError("duplicate dictionary key", key_start)
                value_start = self.offset
                value_token = self._take(1)
                result[key] = self._decode_token(value_token, value_start, depth + 1)

        if token in _DIGITS:
            return self._decode_bytes(token, start)

        raise DecodeError(f"unexpected byte {token!r}", start)

    def _decode_int(self, start: int) -> int:
        digits = bytearray()
        while True:
            ch = self._take(1)
            if ch == b"e":
                break
            if len(digits) >= MAX_INT_DIGITS:
                raise DecodeError("integer too long", start)
            digits += ch

        body = bytes(digits)
        negative = body.startswith(b"-")
        magnitude = body[1:] if negative else body

        if not magnitude or any(b not in _DIGITS for b in magnitude):
            raise DecodeError("malformed integer", start)
        if len(magnitude) > 1 and magnitude.startswith(b"0"):
            raise DecodeError("integer has leading zeros", start)
        if negative and magnitude == b"0":
            raise DecodeError("negative zero", start)

        return int(body)

    def _decode_bytes(self, first_digit: bytes, start: int) -> bytes:
        digits = bytearray(first_digit)
        while True:
            ch = self._take(1)
            if ch == b":":
                break
            if ch not in _DIGITS:
                raise DecodeError("malformed string length", start)
            if len(digits) >= MAX_LENGTH_DIGITS:
                raise DecodeError("string length too long", start)
            digits += ch

        if len(digits) > 1 and digits.startswith(b"0"):
            raise DecodeError("string length has leading zeros", start)

        length = int(digits)
        if self.offset + length > self.max_length:
            raise DecodeError("string length exceeds data", start)
        return self._take(length)


# ============================================================================
# Public API
# ============================================================================

def decode_prefix(
    data: Union[bytes, bytearray, memoryview],
    max_length: Optional[int] = None,
) -> Tuple[BencodeValue, int]:
    """
    Декодировать одно значение с начала буфера.

    [BEP-9] Сообщение ut_metadata data - это bencoded словарь, за которым
    без разделителя следуют сырые байты куска. Возвращаемое смещение
    указывает на начало этих байт.

    Returns:
        (value, offset): значение и смещение сразу после него
    """
    decoder = BencodeDecoder.from_bytes(data, max_length)
    value = decoder.decode_value()
    return value, decoder.offset


def decode(
    data: Union[bytes, bytearray, memoryview],
    max_length: Optional[int] = None,
) -> BencodeValue:
    """
    Декодировать буфер, содержащий ровно одно значение.

    Args:
        data: Входные байты
        max_length: Ограничение на размер входа (по умолчанию len(data))

    Raises:
        DecodeError: битый вход, лишние байты в конце или превышен лимит
    """
    if max_length is not None and len(data) > max_length:
        raise DecodeError("input exceeds length limit", max_length)

    value, end = decode_prefix(data, max_length)
    if end != len(data):
        raise DecodeError("trailing data after value", end)
    return value


def read_value(stream: BinaryIO, max_length: int) -> BencodeValue:
    """
    Потоково декодировать одно значение из файлоподобного объекта.

    Читает ровно столько байт, сколько занимает значение, и никогда
    больше max_length.
    """
    return BencodeDecoder.from_stream(stream, max_length).decode_value()


def encode(value: Any) -> bytes:
    """
    Закодировать значение в bencode.

    Поддерживаются: int, bytes/bytearray/memoryview, str (UTF-8),
    list/tuple, dict (ключи bytes или str).

    Raises:
        TypeError: неподдерживаемый тип
        ValueError: после приведения к bytes ключи словаря совпали
    """
    out: List[bytes] = []
    _encode_into(value, out)
    return b"".join(out)


def _encode_into(value: Any, out: List[bytes]) -> None:
    if isinstance(value, int):
        out.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out.append(b"%d:" % len(raw))
        out.append(raw)
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), out)
    elif isinstance(value, (list, tuple)):
        out.append(b"l")
        for item in value:
            _encode_into(item, out)
        out.append(b"e")
    elif isinstance(value, dict):
        items = []
        for key, item in value.items():
            if isinstance(key, str):
                key = key.encode("utf-8")
            elif isinstance(key, (bytearray, memoryview)):
                key = bytes(key)
            elif not isinstance(key, bytes):
                raise TypeError(f"Unsupported dictionary key type: {type(key)}")
            items.append((key, item))
        items.sort(key=lambda kv: kv[0])
        out.append(b"d")
        previous = None
        for key, item in items:
            if key == previous:
                raise ValueError(f"Duplicate dictionary key: {key!r}")
            previous = key
            _encode_into(key, out)
            _encode_into(item, out)
        out.append(b"e")
    else:
        raise TypeError(f"Unsupported type for bencode: {type(value)}")


# ============================================================================
# Typed accessors
# ============================================================================

def _lookup(mapping: Dict[bytes, Any], key: str, default: Any) -> Tuple[bool, Any]:
    raw_key = key.encode("utf-8")
    if raw_key in mapping:
        return True, mapping[raw_key]
    if default is not _MISSING:
        return False, default
    raise BencodeTypeError(key, "present")


def _typed(mapping: Dict[bytes, Any], key: str, default: Any, kind: type, expected: str) -> Any:
    found, value = _lookup(mapping, key, default)
    if found and not isinstance(value, kind):
        raise BencodeTypeError(key, expected)
    return value


def ensure_dict(value: Any, what: str = "<root>") -> Dict[bytes, Any]:
    """Проверить, что значение - словарь."""
    if not isinstance(value, dict):
        raise BencodeTypeError(what, "a dictionary")
    return value


def get_int(mapping: Dict[bytes, Any], key: str, default: Any = _MISSING) -> int:
    return _typed(mapping, key, default, int, "an integer")


def get_bytes(mapping: Dict[bytes, Any], key: str, default: Any = _MISSING) -> bytes:
    return _typed(mapping, key, default, bytes, "a byte string")


def get_list(mapping: Dict[bytes, Any], key: str, default: Any = _MISSING) -> List[Any]:
    return _typed(mapping, key, default, list, "a list")


def get_dict(mapping: Dict[bytes, Any], key: str, default: Any = _MISSING) -> Dict[bytes, Any]:
    return _typed(mapping, key, default, dict, "a dictionary")


def get_str(
    mapping: Dict[bytes, Any],
    key: str,
    default: Any = _MISSING,
    errors: str = "replace",
) -> str:
    """
    Byte string, декодированная как UTF-8.

    Отсутствующий ключ возвращает default как есть (без декодирования).
    """
    found, value = _lookup(mapping, key, default)
    if not found:
        return value
    if not isinstance(value, bytes):
        raise BencodeTypeError(key, "a byte string")
    return value.decode("utf-8", errors)
