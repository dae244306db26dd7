"""
BitTorrent DHT Module
=====================

Участие в Kademlia DHT (BEP-5) в роли пассивного сенсора:
- RoutingTable: K-bucket таблица маршрутизации
- DHTTransport: KRPC поверх одного UDP сокета
- CrawlerDriver: bootstrap, refresh и liveness циклы

[KADEMLIA] Ключевые принципы:
- XOR-метрика для измерения расстояния между узлами
- 160 k-buckets (по длине общего префикса)
- Входящие announce_peer превращаются в AnnounceEvent
"""

from .routing import (
    RoutingTable,
    KBucket,
    Contact,
    xor_distance,
    shared_prefix_length,
    random_id_in_bucket,
    random_node_id,
)

from .krpc import (
    KRPCMessage,
    TokenManager,
    parse_message,
)

from .transport import DHTTransport
from .crawler import CrawlerDriver

__all__ = [
    # Routing
    "RoutingTable",
    "KBucket",
    "Contact",
    "xor_distance",
    "shared_prefix_length",
    "random_id_in_bucket",
    "random_node_id",
    # KRPC
    "KRPCMessage",
    "TokenManager",
    "parse_message",
    # Transport
    "DHTTransport",
    "CrawlerDriver",
]
