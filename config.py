"""
DHT Harvester Configuration
===========================
Централизованная конфигурация для всех модулей харвестера.

[ENV] Переменные окружения (можно задать в .env):
- HARVESTER_HOST / HARVESTER_PORT: UDP адрес DHT
- HARVESTER_WORKERS: предел одновременных metadata сессий
- HARVESTER_QUEUE_SIZE: ёмкость очереди announce событий
- HARVESTER_BOOTSTRAP: список host:port через запятую
- HARVESTER_LOG_LEVEL: уровень логирования
"""

from dataclasses import dataclass, field
from typing import List, Tuple

import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def parse_address(value: str, default_port: int = 6881) -> Tuple[str, int]:
    """host:port -> (host, port)."""
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        return value.strip(), default_port
    return host, int(port)


# Environment overrides
HARVESTER_HOST: str = os.getenv("HARVESTER_HOST", "0.0.0.0").strip()
HARVESTER_PORT: int = _env_int("HARVESTER_PORT", 6881)
HARVESTER_WORKERS: int = _env_int("HARVESTER_WORKERS", 1024)
HARVESTER_QUEUE_SIZE: int = _env_int("HARVESTER_QUEUE_SIZE", 65536)
HARVESTER_SESSION_DEADLINE: float = _env_float("HARVESTER_SESSION_DEADLINE", 30.0)
HARVESTER_LOG_LEVEL: str = os.getenv("HARVESTER_LOG_LEVEL", "INFO").upper()

_BOOTSTRAP_ENV = os.getenv("HARVESTER_BOOTSTRAP", "").strip()
try:
    HARVESTER_BOOTSTRAP: List[Tuple[str, int]] = [
        parse_address(item) for item in _BOOTSTRAP_ENV.split(",") if item.strip()
    ]
except ValueError:
    HARVESTER_BOOTSTRAP = []


@dataclass
class DHTConfig:
    """Настройки DHT слоя."""

    host: str = HARVESTER_HOST
    port: int = HARVESTER_PORT

    # Известные роутеры для первоначального входа в сеть.
    # Используются и при повторном bootstrap, если таблица опустела.
    bootstrap_nodes: List[Tuple[str, int]] = field(default_factory=lambda: list(
        HARVESTER_BOOTSTRAP or [
            ("router.bittorrent.com", 6881),
            ("dht.transmissionbt.com", 6881),
            ("router.utorrent.com", 6881),
        ]
    ))

    # Таймаут KRPC запроса (секунды)
    query_timeout: float = 5.0

    # Таймаутов подряд до вытеснения узла
    ping_retries: int = 2

    # Предел одновременных KRPC транзакций
    max_pending_queries: int = 1024

    # Интервал обновления buckets (секунды)
    refresh_interval: float = 5.0

    # Проверка устаревших контактов
    liveness_interval: float = 60.0
    stale_after: float = 15 * 60

    # Проверять токен в announce_peer (BEP-5)
    verify_tokens: bool = True

    # Файл для сохранения routing table между запусками ("" - выкл)
    nodes_file: str = ""


@dataclass
class MetadataConfig:
    """Настройки metadata сессий."""

    connect_timeout: float = 5.0
    handshake_timeout: float = 10.0
    piece_timeout: float = 10.0

    # Общий дедлайн сессии (секунды)
    deadline: float = HARVESTER_SESSION_DEADLINE

    # Максимальный размер info словаря
    max_metadata_size: int = 10 * 1024 * 1024


@dataclass
class SchedulerConfig:
    """Настройки пула сессий."""

    workers: int = HARVESTER_WORKERS
    queue_size: int = HARVESTER_QUEUE_SIZE

    # LRU уже полученных info-hash (0 - выкл)
    resolved_cache_size: int = 100_000

    # Бан недоступных / нечестных пиров (секунды, 0 - выкл)
    blacklist_ttl: float = 300.0
    blacklist_size: int = 65536


@dataclass
class LoggingConfig:
    """Настройки логирования и статистики."""

    level: str = HARVESTER_LOG_LEVEL
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"

    # Интервал строки статистики (секунды, 0 - выкл)
    stats_interval: float = 60.0


@dataclass
class Config:
    """Главный конфигурационный класс."""

    dht: DHTConfig = field(default_factory=DHTConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Глобальный экземпляр конфигурации
config = Config()
