"""
Announce Events
===============

[FLOW] DHT транспорт -> bounded asyncio.Queue -> Session Scheduler.

Событие живёт только в очереди: потребляется ровно один раз и
нигде не сохраняется.
"""

from dataclasses import dataclass, field
import time
from typing import Tuple


@dataclass(frozen=True)
class AnnounceEvent:
    """Сторонний пир объявил участие в рое."""

    info_hash: bytes  # 20 байт
    ip: str
    port: int
    received_at: float = field(default_factory=time.time, compare=False)

    @property
    def address(self) -> Tuple[str, int]:
        return (self.ip, self.port)

    @property
    def key(self) -> Tuple[bytes, str, int]:
        """Ключ дедупликации одновременных попыток."""
        return (self.info_hash, self.ip, self.port)

    def __str__(self) -> str:
        return f"{self.info_hash.hex()[:16]}...@{self.ip}:{self.port}"
