"""
Harvester Errors - Таксономия ошибок
====================================

[ERRORS] Все ошибки ядра наследуются от HarvesterError:
- DecodeError: битый bencode (вход отбрасывается вызывающей стороной)
- ProtocolViolation: нарушение handshake / extension / индекса куска
- SessionTimeout: пир не ответил до дедлайна
- ValidationFailure: SHA-1 собранных метаданных не совпал с info-hash
- ResourceExhausted: очередь или пул воркеров переполнены

[POLICY] Ни одна ошибка разбора недоверенного входа не должна
завершать процесс. Сессии и пакеты изолируют ошибки: сессия
переходит в FAILED, пакет молча отбрасывается.
"""

from typing import Optional


class HarvesterError(Exception):
    """Базовая ошибка харвестера."""
    pass


class DecodeError(HarvesterError):
    """
    Некорректный bencode.

    Всегда несёт смещение байта, на котором разбор остановился.
    """

    def __init__(self, message: str, offset: int = 0):
        super().__init__(f"{message} at offset {offset}")
        self.message = message
        self.offset = offset


class BencodeTypeError(DecodeError):
    """Значение в декодированном словаре имеет неожиданный тип."""

    def __init__(self, key: str, expected: str, offset: int = 0):
        super().__init__(f"key {key!r} is not {expected}", offset)
        self.key = key
        self.expected = expected


class ProtocolViolation(HarvesterError):
    """Пир нарушил peer wire / extension протокол."""
    pass


class SessionTimeout(HarvesterError):
    """Пир не уложился в таймаут состояния или общий дедлайн сессии."""
    pass


class ValidationFailure(HarvesterError):
    """Хэш собранных метаданных не совпал с info-hash."""
    pass


class ResourceExhausted(HarvesterError):
    """Очередь событий или пул воркеров заполнены."""
    pass


class QueryTimeout(HarvesterError):
    """KRPC запрос не получил ответа за отведённое время."""
    pass


class KRPCErrorReply(HarvesterError):
    """Удалённый узел ответил KRPC сообщением об ошибке (y=e)."""

    def __init__(self, code: int, message: str = "", addr: Optional[tuple] = None):
        super().__init__(f"KRPC error {code}: {message}")
        self.code = code
        self.message = message
        self.addr = addr
