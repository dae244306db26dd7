"""
Peer Blacklist - временный бан адресов пиров
============================================

[BAN] Адрес попадает в список, если пир:
- недоступен (TCP connect не удался)
- отдал метаданные, не прошедшие SHA-1 проверку
- нарушил протокол

Бан временный: по истечении ttl адрес снова принимается.

[MEMORY] Размер списка ограничен; при переполнении вытесняется
самый старый бан.
"""

import time
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


BAN_DURATION = 300.0  # 5 минут
MAX_ENTRIES = 65536

Address = Tuple[str, int]


class PeerBlacklist:
    """
    Временный бан адресов.

    [USAGE]
    ```python
    blacklist = PeerBlacklist(ttl=300)
    blacklist.ban(("10.0.0.7", 51413))
    if ("10.0.0.7", 51413) in blacklist:
        ...
    ```
    """

    def __init__(self, ttl: float = BAN_DURATION, max_entries: int = MAX_ENTRIES):
        self.ttl = ttl
        self.max_entries = max_entries
        self._banned: "OrderedDict[Address, float]" = OrderedDict()  # addr -> until

    def __len__(self) -> int:
        return len(self._banned)

    def __contains__(self, addr: Address) -> bool:
        return self.is_banned(addr)

    def ban(self, addr: Address, duration: Optional[float] = None) -> None:
        """Забанить адрес."""
        if self.ttl <= 0:
            return

        self._banned.pop(addr, None)
        self._banned[addr] = time.monotonic() + (duration or self.ttl)

        while len(self._banned) > self.max_entries:
            self._banned.popitem(last=False)

        logger.debug(f"[BLACKLIST] Temp ban: {addr[0]}:{addr[1]} for {duration or self.ttl}s")

    def unban(self, addr: Address) -> None:
        self._banned.pop(addr, None)

    def is_banned(self, addr: Address) -> bool:
        until = self._banned.get(addr)
        if until is None:
            return False
        if until <= time.monotonic():
            del self._banned[addr]
            return False
        return True

    def purge(self) -> int:
        """Удалить истёкшие баны. Returns: сколько удалено."""
        now = time.monotonic()
        expired = [addr for addr, until in self._banned.items() if until <= now]
        for addr in expired:
            del self._banned[addr]
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "banned": len(self._banned),
            "ttl": self.ttl,
            "max_entries": self.max_entries,
        }
