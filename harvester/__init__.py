"""
DHT Metadata Harvester
======================

Пассивный сенсор BitTorrent DHT:
- dht: routing table, KRPC транспорт, краулер
- metadata: получение info словаря через ut_metadata
- scheduler: bounded пул metadata сессий
- emitter: публикация TorrentRecord

[FLOW]
    DHTTransport -> AnnounceEvent -> SessionScheduler -> MetadataSession
                 -> info dict -> ResultEmitter -> consumer
"""

from .errors import (
    HarvesterError,
    DecodeError,
    BencodeTypeError,
    ProtocolViolation,
    SessionTimeout,
    ValidationFailure,
    ResourceExhausted,
    QueryTimeout,
    KRPCErrorReply,
)
from .events import AnnounceEvent
from .blacklist import PeerBlacklist
from .dht import CrawlerDriver, DHTTransport, RoutingTable, Contact
from .metadata import MetadataSession, SessionLimits, SessionState
from .emitter import ResultEmitter, TorrentRecord, FileEntry, build_record
from .scheduler import SessionScheduler

__version__ = "0.1.0"

__all__ = [
    # Errors
    "HarvesterError",
    "DecodeError",
    "BencodeTypeError",
    "ProtocolViolation",
    "SessionTimeout",
    "ValidationFailure",
    "ResourceExhausted",
    "QueryTimeout",
    "KRPCErrorReply",
    # Pipeline
    "AnnounceEvent",
    "PeerBlacklist",
    "CrawlerDriver",
    "DHTTransport",
    "RoutingTable",
    "Contact",
    "MetadataSession",
    "SessionLimits",
    "SessionState",
    "ResultEmitter",
    "TorrentRecord",
    "FileEntry",
    "build_record",
    "SessionScheduler",
]
