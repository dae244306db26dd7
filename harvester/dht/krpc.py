"""
KRPC - формат сообщений BitTorrent DHT (BEP-5)
==============================================

[KRPC] Каждое сообщение - bencoded словарь:
- t: transaction id (byte string, эхо в ответе)
- y: тип сообщения: q (query), r (response), e (error)
- q: имя метода (только для query)
- a: аргументы query, всегда содержат id отправителя
- r: словарь ответа, всегда содержит id отвечающего
- e: список [code, message]

[METHODS] ping, find_node, get_peers, announce_peer

[COMPACT] Компактные форматы (только IPv4):
- Узел: node_id(20) + ip(4) + port(2, big-endian) = 26 байт
- Пир: ip(4) + port(2) = 6 байт

[TOKENS] Токен для announce_peer = HMAC-SHA1(secret, ip запрашивающего).
Секрет ротируется; принимаются токены текущего и предыдущего секрета.
"""

import os
import hmac
import time
import socket
import struct
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..bencode import decode, encode, ensure_dict, get_bytes, get_dict, get_list
from ..errors import DecodeError
from .routing import Contact, ID_BYTES

logger = logging.getLogger(__name__)


# Типы сообщений
KRPC_QUERY = b"q"
KRPC_RESPONSE = b"r"
KRPC_ERROR = b"e"

# Методы
PING = b"ping"
FIND_NODE = b"find_node"
GET_PEERS = b"get_peers"
ANNOUNCE_PEER = b"announce_peer"

QUERY_METHODS = (PING, FIND_NODE, GET_PEERS, ANNOUNCE_PEER)

# Коды ошибок (BEP-5)
ERROR_GENERIC = 201
ERROR_SERVER = 202
ERROR_PROTOCOL = 203
ERROR_METHOD_UNKNOWN = 204

COMPACT_NODE_SIZE = 26
COMPACT_PEER_SIZE = 6
MAX_DATAGRAM_SIZE = 65536

CLIENT_VERSION = b"HV01"
TOKEN_ROTATE_INTERVAL = 300.0  # 5 минут
TOKEN_SIZE = 8


@dataclass
class KRPCMessage:
    """
    Разобранное KRPC сообщение.

    Поля заполняются в зависимости от kind:
    - query: method + args
    - response: response
    - error: error_code + error_message
    """

    tid: bytes
    kind: bytes
    method: bytes = b""
    args: Dict[bytes, Any] = field(default_factory=dict)
    response: Dict[bytes, Any] = field(default_factory=dict)
    error_code: int = 0
    error_message: str = ""

    @property
    def is_query(self) -> bool:
        return self.kind == KRPC_QUERY

    @property
    def is_response(self) -> bool:
        return self.kind == KRPC_RESPONSE

    @property
    def is_error(self) -> bool:
        return self.kind == KRPC_ERROR

    @property
    def sender_id(self) -> Optional[bytes]:
        """id отправителя query или ответа, если корректен."""
        source = self.args if self.is_query else self.response
        node_id = source.get(b"id")
        if isinstance(node_id, bytes) and len(node_id) == ID_BYTES:
            return node_id
        return None


def parse_message(data: bytes) -> KRPCMessage:
    """
    Разобрать датаграмму.

    Raises:
        DecodeError: битый bencode или нарушена структура KRPC
    """
    root = ensure_dict(decode(data, max_length=MAX_DATAGRAM_SIZE))
    tid = get_bytes(root, "t")
    kind = get_bytes(root, "y")

    if kind == KRPC_QUERY:
        return KRPCMessage(
            tid=tid,
            kind=kind,
            method=get_bytes(root, "q"),
            args=get_dict(root, "a"),
        )

    if kind == KRPC_RESPONSE:
        return KRPCMessage(tid=tid, kind=kind, response=get_dict(root, "r"))

    if kind == KRPC_ERROR:
        details = get_list(root, "e", [])
        code = details[0] if details and isinstance(details[0], int) else ERROR_GENERIC
        message = b""
        if len(details) > 1 and isinstance(details[1], bytes):
            message = details[1]
        return KRPCMessage(
            tid=tid,
            kind=kind,
            error_code=code,
            error_message=message.decode("utf-8", "replace"),
        )

    raise DecodeError(f"unknown KRPC message type {kind!r}", 0)


def build_query(tid: bytes, method: bytes, args: Dict[bytes, Any]) -> bytes:
    return encode({
        b"t": tid,
        b"y": KRPC_QUERY,
        b"q": method,
        b"a": args,
        b"v": CLIENT_VERSION,
    })


def build_response(tid: bytes, values: Dict[bytes, Any]) -> bytes:
    return encode({
        b"t": tid,
        b"y": KRPC_RESPONSE,
        b"r": values,
        b"v": CLIENT_VERSION,
    })


def build_error(tid: bytes, code: int, message: str) -> bytes:
    return encode({
        b"t": tid,
        b"y": KRPC_ERROR,
        b"e": [code, message.encode("utf-8")],
        b"v": CLIENT_VERSION,
    })


# ============================================================================
# Compact encodings
# ============================================================================

def encode_compact_address(ip: str, port: int) -> bytes:
    """ip(4) + port(2)."""
    return socket.inet_aton(ip) + struct.pack("!H", port)


def decode_compact_address(data: bytes) -> Tuple[str, int]:
    ip = socket.inet_ntoa(data[:4])
    (port,) = struct.unpack("!H", data[4:6])
    return ip, port


def encode_compact_nodes(contacts: Iterable[Contact]) -> bytes:
    """Склеить узлы в 26-байтный compact формат. Не-IPv4 адреса пропускаются."""
    out = []
    for contact in contacts:
        try:
            out.append(contact.node_id + encode_compact_address(contact.ip, contact.port))
        except (OSError, struct.error):
            continue
    return b"".join(out)


def decode_compact_nodes(data: bytes) -> List[Tuple[bytes, str, int]]:
    """
    Разобрать поле nodes.

    Хвост, не кратный 26 байтам, отбрасывается; записи с портом 0
    пропускаются.

    Returns:
        Список (node_id, ip, port)
    """
    out = []
    usable = len(data) - len(data) % COMPACT_NODE_SIZE
    for i in range(0, usable, COMPACT_NODE_SIZE):
        entry = data[i:i + COMPACT_NODE_SIZE]
        ip, port = decode_compact_address(entry[ID_BYTES:])
        if port == 0:
            continue
        out.append((entry[:ID_BYTES], ip, port))
    return out


def decode_compact_peers(values: Any) -> List[Tuple[str, int]]:
    """Разобрать поле values (список 6-байтных записей)."""
    peers = []
    if not isinstance(values, list):
        return peers
    for value in values:
        if isinstance(value, bytes) and len(value) == COMPACT_PEER_SIZE:
            peers.append(decode_compact_address(value))
    return peers


# ============================================================================
# Tokens
# ============================================================================

class TokenManager:
    """
    Выдача и проверка токенов announce_peer.

    [BEP-5] Токен привязан к IP запрашивающего и действует ограниченное
    время. Мы принимаем токены текущего и предыдущего секрета, то есть
    токен живёт от одного до двух интервалов ротации.
    """

    def __init__(self, rotate_interval: float = TOKEN_ROTATE_INTERVAL):
        self.rotate_interval = rotate_interval
        self._secret = os.urandom(16)
        self._previous = self._secret
        self._rotated_at = time.monotonic()

    def _maybe_rotate(self) -> None:
        now = time.monotonic()
        if now - self._rotated_at >= self.rotate_interval:
            self._previous = self._secret
            self._secret = os.urandom(16)
            self._rotated_at = now

    @staticmethod
    def _token(secret: bytes, ip: str) -> bytes:
        return hmac.new(secret, ip.encode("ascii", "ignore"), hashlib.sha1).digest()[:TOKEN_SIZE]

    def generate(self, ip: str) -> bytes:
        self._maybe_rotate()
        return self._token(self._secret, ip)

    def verify(self, token: Any, ip: str) -> bool:
        if not isinstance(token, bytes):
            return False
        self._maybe_rotate()
        return any(
            hmac.compare_digest(token, self._token(secret, ip))
            for secret in (self._secret, self._previous)
        )
