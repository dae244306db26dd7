"""
Kademlia Routing Table
======================

[KADEMLIA] K-bucket таблица маршрутизации:
- XOR-метрика расстояния между node_id
- 160 k-buckets, индекс = длина общего префикса с нашим node_id
- k = 8 узлов на bucket (стандарт BitTorrent DHT, BEP-5)
- Узлы в bucket упорядочены по времени последней верификации

[EVICTION] Политика вытеснения:
- Непроверенный узел (только слышали о нём) никогда не вытесняет
  известный; при полном bucket он просто отбрасывается
- Проверенный узел (получили от него ответ) вытесняет наименее
  давно проверенный узел bucket
- Самый недавно проверенный узел никогда не вытесняется

[OWNERSHIP] Таблицу меняет только цикл DHT транспорта. Блокировок нет:
все вызовы происходят в одном event loop.

[XOR] Почему XOR:
- XOR(a, a) = 0 (узел ближе всего к себе)
- XOR(a, b) = XOR(b, a) (симметрия)
- Для любого a и расстояния d существует ровно один b: XOR(a, b) = d
"""

import os
import time
import random
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Tuple, Iterator
from collections import OrderedDict

logger = logging.getLogger(__name__)


# Константы Kademlia
K = 8  # Размер k-bucket (BEP-5)
ID_BITS = 160  # Битность идентификаторов (SHA-1)
ID_BYTES = ID_BITS // 8
STALE_AFTER = 15 * 60  # Узел без ответа 15 минут считается устаревшим


def random_node_id() -> bytes:
    """Случайный 160-битный идентификатор."""
    return os.urandom(ID_BYTES)


@dataclass
class Contact:
    """
    Известный участник DHT.

    [KADEMLIA] Контакт идентифицируется node_id, а достижим по ip/port.
    - last_seen: последний любой пакет от узла
    - last_verified: последний ответ на наш запрос (0 = ни разу)
    - failed_requests: подряд идущие таймауты
    """

    node_id: bytes  # 20 байт (160 бит)
    ip: str
    port: int
    last_seen: float = field(default_factory=time.time)
    last_verified: float = 0.0
    failed_requests: int = 0

    @property
    def node_id_hex(self) -> str:
        """Node ID в hex формате."""
        return self.node_id.hex()

    @property
    def address(self) -> Tuple[str, int]:
        """Адрес как кортеж (ip, port)."""
        return (self.ip, self.port)

    @property
    def verified(self) -> bool:
        """Получали ли мы от узла ответ."""
        return self.last_verified > 0

    def mark_verified(self, now: Optional[float] = None) -> None:
        """Узел ответил на запрос."""
        now = now if now is not None else time.time()
        self.last_seen = now
        self.last_verified = now
        self.failed_requests = 0

    def mark_failed(self) -> None:
        """Отметить неудачный запрос."""
        self.failed_requests += 1

    def is_stale(self, timeout: float = STALE_AFTER) -> bool:
        """Проверить, устарел ли узел."""
        reference = self.last_verified or self.last_seen
        return time.time() - reference > timeout

    def to_dict(self) -> Dict:
        return {
            "node_id": self.node_id.hex(),
            "ip": self.ip,
            "port": self.port,
            "last_seen": self.last_seen,
            "last_verified": self.last_verified,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Contact":
        return cls(
            node_id=bytes.fromhex(data["node_id"]),
            ip=data["ip"],
            port=data["port"],
            last_seen=data.get("last_seen", time.time()),
            last_verified=data.get("last_verified", 0.0),
        )

    def __hash__(self) -> int:
        return hash(self.node_id)

    def __eq__(self, other) -> bool:
        if isinstance(other, Contact):
            return self.node_id == other.node_id
        return False


def xor_distance(id1: bytes, id2: bytes) -> int:
    """
    Вычислить XOR-расстояние между двумя идентификаторами.

    Returns:
        XOR двух ID как беззнаковое big-endian целое
    """
    if len(id1) != len(id2):
        raise ValueError(f"ID length mismatch: {len(id1)} vs {len(id2)}")

    return int.from_bytes(id1, "big") ^ int.from_bytes(id2, "big")


def shared_prefix_length(id1: bytes, id2: bytes) -> int:
    """
    Длина общего битового префикса двух ID.

    - Одинаковые ID -> 160
    - Различие в старшем бите -> 0
    """
    return ID_BITS - xor_distance(id1, id2).bit_length()


def random_id_in_bucket(local_id: bytes, prefix_length: int) -> bytes:
    """
    Сгенерировать случайный ID, который попадёт в bucket prefix_length.

    [KADEMLIA] Используется для обновления bucket: ищем узлы рядом
    с этим ID, и ответы заполняют именно этот участок таблицы.
    """
    if not 0 <= prefix_length < ID_BITS:
        raise ValueError(f"prefix_length out of range: {prefix_length}")

    # Первый отличающийся бит стоит сразу после общего префикса
    top_bit = ID_BITS - 1 - prefix_length
    distance = (1 << top_bit) | random.getrandbits(top_bit) if top_bit else 1
    target = int.from_bytes(local_id, "big") ^ distance
    return target.to_bytes(ID_BYTES, "big")


class KBucket:
    """
    K-bucket для хранения узлов с одинаковой длиной общего префикса.

    [KADEMLIA] Каждый bucket:
    - Хранит до k узлов
    - Узлы упорядочены по времени верификации (LRU: head - самый старый)
    - При переполнении проверенный новичок вытесняет наименее
      давно проверенный узел, непроверенный новичок отбрасывается
    """

    def __init__(self, k: int = K):
        self.k = k
        self._nodes: "OrderedDict[bytes, Contact]" = OrderedDict()
        self.last_updated = time.time()

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Contact]:
        return iter(list(self._nodes.values()))

    def __contains__(self, node_id: bytes) -> bool:
        return node_id in self._nodes

    @property
    def is_full(self) -> bool:
        return len(self._nodes) >= self.k

    @property
    def nodes(self) -> List[Contact]:
        return list(self._nodes.values())

    def get(self, node_id: bytes) -> Optional[Contact]:
        return self._nodes.get(node_id)

    def least_recently_verified(self) -> Optional[Contact]:
        """Кандидат на вытеснение."""
        if not self._nodes:
            return None
        return min(self._nodes.values(), key=lambda c: c.last_verified)

    def add(self, contact: Contact) -> Tuple[bool, Optional[Contact]]:
        """
        Добавить узел в bucket.

        Returns:
            (added, evicted):
            - (True, None) - узел добавлен или обновлён
            - (True, Contact) - узел добавлен, этот узел вытеснен
            - (False, None) - bucket полон, новичок не проверен
        """
        existing = self._nodes.get(contact.node_id)
        if existing is not None:
            if contact.verified:
                # Адрес меняем только по подтверждённому ответу
                existing.ip = contact.ip
                existing.port = contact.port
                existing.mark_verified(contact.last_verified)
                self._nodes.move_to_end(contact.node_id)
                self.last_updated = time.time()
            else:
                existing.last_seen = max(existing.last_seen, contact.last_seen)
            return True, None

        if not self.is_full:
            self._nodes[contact.node_id] = contact
            self.last_updated = time.time()
            return True, None

        if not contact.verified:
            return False, None

        victim = self.least_recently_verified()
        del self._nodes[victim.node_id]
        self._nodes[contact.node_id] = contact
        self.last_updated = time.time()
        return True, victim

    def remove(self, node_id: bytes) -> bool:
        if node_id in self._nodes:
            del self._nodes[node_id]
            return True
        return False

    def needs_refresh(self, interval: float) -> bool:
        """Проверить, нужно ли обновить bucket."""
        return time.time() - self.last_updated > interval


class RoutingTable:
    """
    Kademlia Routing Table - таблица маршрутизации.

    [KADEMLIA] Структура:
    - 160 k-buckets, bucket i содержит узлы с общим префиксом длины i
    - Один node_id встречается не более одного раза во всей таблице
    - closest() возвращает узлы с минимальным XOR-расстоянием до цели

    [USAGE]
    ```python
    table = RoutingTable(local_id)
    table.insert(Contact(node_id, "1.2.3.4", 6881))
    nearest = table.closest(target_id, 8)
    ```
    """

    def __init__(self, local_id: bytes, k: int = K):
        """
        Args:
            local_id: Наш node_id (20 байт)
            k: Размер k-bucket
        """
        if len(local_id) != ID_BYTES:
            raise ValueError(f"local_id must be {ID_BYTES} bytes, got {len(local_id)}")

        self.local_id = local_id
        self.k = k
        self.buckets: List[KBucket] = [KBucket(k) for _ in range(ID_BITS)]

        logger.info(f"[DHT] RoutingTable initialized: local_id={local_id.hex()[:16]}...")

    def __len__(self) -> int:
        """Общее количество узлов в таблице."""
        return sum(len(b) for b in self.buckets)

    def __contains__(self, node_id: bytes) -> bool:
        return self.get(node_id) is not None

    def bucket_index(self, node_id: bytes) -> int:
        """Индекс bucket = длина общего префикса с local_id."""
        return min(shared_prefix_length(self.local_id, node_id), ID_BITS - 1)

    def get_bucket(self, node_id: bytes) -> KBucket:
        return self.buckets[self.bucket_index(node_id)]

    def insert(self, contact: Contact) -> bool:
        """
        Добавить или обновить контакт.

        Returns:
            True если контакт находится в таблице после вызова
        """
        if contact.node_id == self.local_id or len(contact.node_id) != ID_BYTES:
            return False

        added, evicted = self.get_bucket(contact.node_id).add(contact)
        if evicted is not None:
            logger.debug(
                f"[DHT] Evicted {evicted.node_id_hex[:16]}... "
                f"for verified {contact.node_id_hex[:16]}..."
            )
        return added

    def remove(self, node_id: bytes) -> bool:
        """Удалить узел из таблицы."""
        if node_id == self.local_id or len(node_id) != ID_BYTES:
            return False
        return self.get_bucket(node_id).remove(node_id)

    def get(self, node_id: bytes) -> Optional[Contact]:
        if len(node_id) != ID_BYTES:
            return None
        return self.get_bucket(node_id).get(node_id)

    def mark_verified(self, node_id: bytes, ip: str, port: int) -> bool:
        """
        Узел ответил на наш запрос: добавить как проверенный.

        Returns:
            True если узел находится в таблице после вызова
        """
        contact = Contact(node_id=node_id, ip=ip, port=port)
        contact.mark_verified()
        return self.insert(contact)

    def mark_failed(self, node_id: bytes, max_failures: int) -> bool:
        """
        Узел не ответил на запрос.

        Returns:
            True если узел был вытеснен (исчерпан лимит неудач)
        """
        contact = self.get(node_id)
        if contact is None:
            return False

        contact.mark_failed()
        if contact.failed_requests >= max_failures:
            self.remove(node_id)
            logger.debug(
                f"[DHT] Removed unresponsive node {contact.node_id_hex[:16]}... "
                f"after {contact.failed_requests} failures"
            )
            return True
        return False

    def closest(self, target_id: bytes, count: int = K) -> List[Contact]:
        """
        Найти count ближайших узлов к целевому ID.

        [KADEMLIA] Сортировка по XOR-расстоянию до target_id; при равенстве
        выше стоит более недавно проверенный узел.
        """
        target = int.from_bytes(target_id, "big")
        candidates = [
            (target ^ int.from_bytes(c.node_id, "big"), -c.last_verified, c)
            for bucket in self.buckets
            for c in bucket
        ]
        candidates.sort(key=lambda item: (item[0], item[1]))
        return [c for _, _, c in candidates[:count]]

    def get_all_nodes(self) -> List[Contact]:
        nodes: List[Contact] = []
        for bucket in self.buckets:
            nodes.extend(bucket.nodes)
        return nodes

    def stale_contacts(self, timeout: float = STALE_AFTER) -> List[Contact]:
        """Узлы, которые давно не отвечали и требуют проверки ping."""
        return [c for c in self.get_all_nodes() if c.is_stale(timeout)]

    def sparse_bucket_targets(self, limit: int = 8) -> List[bytes]:
        """
        ID для обновления недонаполненных buckets.

        [KADEMLIA] Bucket refresh:
        - Берём buckets от 0 до самого глубокого непустого (+1)
        - Для каждого с числом узлов < k генерируем случайный ID в нём
        - FIND_NODE к такому ID подтягивает узлы в этот участок

        Returns:
            Не более limit ID в случайном порядке
        """
        deepest = 0
        for index, bucket in enumerate(self.buckets):
            if len(bucket):
                deepest = index
        horizon = min(deepest + 1, ID_BITS - 1)

        sparse = [i for i in range(horizon + 1) if len(self.buckets[i]) < self.k]
        random.shuffle(sparse)
        return [random_id_in_bucket(self.local_id, i) for i in sparse[:limit]]

    def get_stats(self) -> Dict:
        """Получить статистику таблицы маршрутизации."""
        non_empty = [(i, len(b)) for i, b in enumerate(self.buckets) if len(b)]
        nodes = self.get_all_nodes()

        return {
            "local_id": self.local_id.hex(),
            "total_nodes": len(nodes),
            "verified_nodes": sum(1 for c in nodes if c.verified),
            "non_empty_buckets": len(non_empty),
            "k": self.k,
            "bucket_sizes": dict(non_empty[:10]),
        }

    def to_dict(self) -> Dict:
        """Сериализация для сохранения между запусками."""
        return {
            "local_id": self.local_id.hex(),
            "nodes": [c.to_dict() for c in self.get_all_nodes()],
        }

    @classmethod
    def from_dict(cls, data: Dict, k: int = K) -> "RoutingTable":
        table = cls(bytes.fromhex(data["local_id"]), k=k)
        for node_data in data.get("nodes", []):
            table.insert(Contact.from_dict(node_data))
        return table
