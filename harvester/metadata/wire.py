"""
Peer Wire Protocol - минимальное подмножество для ut_metadata
=============================================================

Спецификация handshake (68 bytes):
==================================

| Field     | Size | Description                                 |
|-----------|------|---------------------------------------------|
| pstrlen   | 1    | 19                                          |
| pstr      | 19   | b'BitTorrent protocol'                      |
| reserved  | 8    | reserved[5] & 0x10 -> extension protocol    |
| info_hash | 20   | SHA-1 info словаря                          |
| peer_id   | 20   | Идентификатор клиента                       |
|-----------|------|---------------------------------------------|
| TOTAL     | 68   |                                             |

[FRAMING] После handshake каждое сообщение:
    [length: 4 bytes big-endian][id: 1 byte][payload]
length = 0 - keep-alive без id.

[BEP-10] Extended message: id = 20, первый байт payload - extended id.
Extended id 0 - extension handshake (bencoded словарь с полем m).

[BEP-9] ut_metadata: bencoded заголовок {msg_type, piece[, total_size]},
у data-сообщения за ним сразу идут сырые байты куска.
- msg_type 0: request
- msg_type 1: data
- msg_type 2: reject
"""

import os
import math
import struct
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from ..bencode import decode, decode_prefix, encode, ensure_dict, get_dict, get_int
from ..errors import DecodeError, ProtocolViolation

logger = logging.getLogger(__name__)


# ============================================================================
# Protocol Constants
# ============================================================================

PROTOCOL_NAME = b"BitTorrent protocol"
HANDSHAKE_SIZE = 68
HANDSHAKE_FORMAT = ">B19s8s20s20s"

EXTENSION_BYTE = 5  # reserved[5] & 0x10
EXTENSION_FLAG = 0x10

MSG_EXTENDED = 20
EXT_HANDSHAKE_ID = 0

UT_METADATA = b"ut_metadata"
LOCAL_UT_METADATA_ID = 1  # id, под которым мы принимаем ut_metadata

UT_REQUEST = 0
UT_DATA = 1
UT_REJECT = 2

METADATA_PIECE_SIZE = 16384  # 16 KiB (BEP-9)
MAX_METADATA_SIZE = 10 * 1024 * 1024  # 10 MiB
MAX_MESSAGE_SIZE = METADATA_PIECE_SIZE + 1024  # кусок + заголовок с запасом

CLIENT_NAME = b"dht-harvester 0.1"
PEER_ID_PREFIX = b"-HV0001-"


def generate_peer_id() -> bytes:
    """Azureus-style peer id: префикс клиента + 12 случайных байт."""
    return PEER_ID_PREFIX + os.urandom(20 - len(PEER_ID_PREFIX))


def piece_count(metadata_size: int) -> int:
    """Количество кусков метаданных."""
    return math.ceil(metadata_size / METADATA_PIECE_SIZE)


def expected_piece_size(metadata_size: int, index: int) -> int:
    """Все куски по 16 KiB, кроме последнего."""
    if index < piece_count(metadata_size) - 1:
        return METADATA_PIECE_SIZE
    return metadata_size - METADATA_PIECE_SIZE * index


# ============================================================================
# Handshake
# ============================================================================

@dataclass
class Handshake:
    """
    BitTorrent handshake.

    [WIRE] Fixed 68 bytes.
    """

    info_hash: bytes
    peer_id: bytes
    reserved: bytes = b"\x00" * 8

    @classmethod
    def for_metadata(cls, info_hash: bytes, peer_id: bytes) -> "Handshake":
        """Handshake с поднятым битом extension protocol."""
        reserved = bytearray(8)
        reserved[EXTENSION_BYTE] |= EXTENSION_FLAG
        return cls(info_hash=info_hash, peer_id=peer_id, reserved=bytes(reserved))

    @property
    def supports_extensions(self) -> bool:
        return bool(self.reserved[EXTENSION_BYTE] & EXTENSION_FLAG)

    def pack(self) -> bytes:
        return struct.pack(
            HANDSHAKE_FORMAT,
            len(PROTOCOL_NAME),
            PROTOCOL_NAME,
            self.reserved,
            self.info_hash,
            self.peer_id,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Handshake":
        """
        Распаковать handshake.

        Raises:
            ProtocolViolation: неверная длина или строка протокола
        """
        if len(data) != HANDSHAKE_SIZE:
            raise ProtocolViolation(f"Handshake size {len(data)} != {HANDSHAKE_SIZE}")

        pstrlen, pstr, reserved, info_hash, peer_id = struct.unpack(HANDSHAKE_FORMAT, data)
        if pstrlen != len(PROTOCOL_NAME) or pstr != PROTOCOL_NAME:
            raise ProtocolViolation(f"Unexpected protocol string: {pstr!r}")

        return cls(info_hash=info_hash, peer_id=peer_id, reserved=reserved)


# ============================================================================
# Framing
# ============================================================================

def frame(msg_id: int, payload: bytes = b"") -> bytes:
    """[length][id][payload]."""
    return struct.pack(">IB", len(payload) + 1, msg_id) + payload


async def read_frame(
    reader: asyncio.StreamReader,
    max_size: int = MAX_MESSAGE_SIZE,
) -> Optional[Tuple[int, bytes]]:
    """
    Прочитать одно сообщение.

    Returns:
        (msg_id, payload) или None для keep-alive

    Raises:
        ProtocolViolation: сообщение больше max_size
        asyncio.IncompleteReadError: соединение закрыто
    """
    (length,) = struct.unpack(">I", await reader.readexactly(4))
    if length == 0:
        return None
    if length > max_size:
        raise ProtocolViolation(f"Message too large: {length} > {max_size}")

    body = await reader.readexactly(length)
    return body[0], body[1:]


def build_extended(ext_id: int, payload: bytes) -> bytes:
    """BEP-10 extended message."""
    return frame(MSG_EXTENDED, bytes([ext_id]) + payload)


def split_extended(payload: bytes) -> Tuple[int, bytes]:
    """Payload extended сообщения -> (ext_id, body)."""
    if not payload:
        raise ProtocolViolation("Empty extended message")
    return payload[0], payload[1:]


# ============================================================================
# Extension handshake (BEP-10)
# ============================================================================

@dataclass
class ExtensionHandshake:
    """То, что пир сообщил о себе в extension handshake."""

    ut_metadata_id: int
    metadata_size: int


def build_extension_handshake(metadata_size: Optional[int] = None) -> bytes:
    fields = {
        b"m": {UT_METADATA: LOCAL_UT_METADATA_ID},
        b"v": CLIENT_NAME,
    }
    if metadata_size is not None:
        fields[b"metadata_size"] = metadata_size
    return build_extended(EXT_HANDSHAKE_ID, encode(fields))


def parse_extension_handshake(
    body: bytes,
    max_metadata_size: int = MAX_METADATA_SIZE,
) -> ExtensionHandshake:
    """
    Разобрать extension handshake пира.

    Raises:
        ProtocolViolation: нет ut_metadata или недопустимый metadata_size
    """
    try:
        fields = ensure_dict(decode(body))
        extensions = get_dict(fields, "m")
        ut_metadata_id = get_int(extensions, "ut_metadata", 0)
        metadata_size = get_int(fields, "metadata_size", 0)
    except DecodeError as e:
        raise ProtocolViolation(f"Bad extension handshake: {e}") from e

    if ut_metadata_id <= 0 or ut_metadata_id > 255:
        raise ProtocolViolation("Peer does not support ut_metadata")
    if metadata_size <= 0:
        raise ProtocolViolation(f"Invalid metadata_size: {metadata_size}")
    if metadata_size > max_metadata_size:
        raise ProtocolViolation(
            f"metadata_size {metadata_size} exceeds limit {max_metadata_size}"
        )

    return ExtensionHandshake(ut_metadata_id=ut_metadata_id, metadata_size=metadata_size)


# ============================================================================
# ut_metadata (BEP-9)
# ============================================================================

@dataclass
class MetadataMessage:
    """Разобранное ut_metadata сообщение."""

    msg_type: int
    piece: int
    total_size: int = 0
    data: bytes = b""


def build_metadata_request(ext_id: int, piece: int) -> bytes:
    return build_extended(ext_id, encode({b"msg_type": UT_REQUEST, b"piece": piece}))


def build_metadata_reject(ext_id: int, piece: int) -> bytes:
    return build_extended(ext_id, encode({b"msg_type": UT_REJECT, b"piece": piece}))


def build_metadata_data(ext_id: int, piece: int, total_size: int, data: bytes) -> bytes:
    header = encode({b"msg_type": UT_DATA, b"piece": piece, b"total_size": total_size})
    return build_extended(ext_id, header + data)


def parse_metadata_message(body: bytes) -> MetadataMessage:
    """
    Разобрать ut_metadata сообщение.

    Raises:
        ProtocolViolation: битый заголовок
    """
    try:
        header, offset = decode_prefix(body)
        header = ensure_dict(header)
        msg_type = get_int(header, "msg_type")
        piece = get_int(header, "piece")
        total_size = get_int(header, "total_size", 0)
    except DecodeError as e:
        raise ProtocolViolation(f"Bad ut_metadata message: {e}") from e

    return MetadataMessage(
        msg_type=msg_type,
        piece=piece,
        total_size=total_size,
        data=body[offset:] if msg_type == UT_DATA else b"",
    )
