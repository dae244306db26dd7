"""
Metadata Module
===============

Получение info словаря по info-hash у пира (BEP-9 поверх BEP-10):
- wire: handshake, framing, extension и ut_metadata сообщения
- session: конечный автомат одной попытки
"""

from .session import MetadataSession, SessionLimits, SessionState
from .wire import (
    Handshake,
    METADATA_PIECE_SIZE,
    MAX_METADATA_SIZE,
    piece_count,
)

__all__ = [
    "MetadataSession",
    "SessionLimits",
    "SessionState",
    "Handshake",
    "METADATA_PIECE_SIZE",
    "MAX_METADATA_SIZE",
    "piece_count",
]
