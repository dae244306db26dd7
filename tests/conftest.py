"""
DHT Harvester Test Configuration
================================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no I/O, fast
- Integration tests: Real async I/O on localhost
- E2E tests: Full DHT -> scheduler -> session -> emitter pipeline

[FIXTURES]
- metrics: Fresh MetricsCollector per test
- routing_table: Empty table with a random local id
- torrent_factory: Build info dictionaries and their info-hash
- peer_factory: Spawn in-memory ut_metadata peers on localhost

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
    pytest tests/e2e/           # End-to-end tests
"""

import os
import sys
import asyncio
import hashlib
import tempfile
import shutil
import logging
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Generator, List, Optional
from dataclasses import dataclass, field

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from harvester.bencode import encode
from harvester.dht.routing import RoutingTable, random_node_id
from harvester.errors import ProtocolViolation
from harvester.metadata.wire import (
    EXT_HANDSHAKE_ID, LOCAL_UT_METADATA_ID, METADATA_PIECE_SIZE, MSG_EXTENDED,
    UT_REQUEST, Handshake,
    build_extended, build_metadata_data, build_metadata_reject, frame,
    generate_peer_id, parse_metadata_message, read_frame, split_extended,
)
from harvester.monitoring import MetricsCollector


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (I/O, slower)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        path = str(item.fspath)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in path:
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="harvester_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


# ============================================================================
# Core Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def metrics() -> MetricsCollector:
    """Fresh metrics collector, isolated from the global one."""
    return MetricsCollector()


@pytest.fixture(scope="function")
def local_id() -> bytes:
    return random_node_id()


@pytest.fixture(scope="function")
def routing_table(local_id: bytes) -> RoutingTable:
    return RoutingTable(local_id)


# ============================================================================
# Torrent Fixtures
# ============================================================================

@dataclass
class Torrent:
    """Info dictionary together with its canonical bytes and info-hash."""
    info: Dict[bytes, Any]
    raw: bytes
    info_hash: bytes

    @property
    def pieces(self) -> int:
        return -(-len(self.raw) // METADATA_PIECE_SIZE)


class TorrentFactory:
    """
    Build info dictionaries for tests.

    [USAGE]
        torrent = torrent_factory.single("a.txt", 100)
        torrent = torrent_factory.multi("album", [(["cd1", "01.flac"], 5000)], pieces_blob=40000)
    """

    @staticmethod
    def from_info(info: Dict[bytes, Any]) -> Torrent:
        raw = encode(info)
        return Torrent(info=info, raw=raw, info_hash=hashlib.sha1(raw).digest())

    def single(self, name: str = "a.txt", length: int = 100) -> Torrent:
        return self.from_info({
            b"name": name.encode("utf-8"),
            b"length": length,
            b"piece length": 16384,
            b"pieces": hashlib.sha1(name.encode()).digest(),
        })

    def multi(
        self,
        name: str,
        files: List[tuple],
        pieces_blob: int = 20,
    ) -> Torrent:
        """pieces_blob inflates the dictionary to span several metadata pieces."""
        return self.from_info({
            b"name": name.encode("utf-8"),
            b"piece length": 262144,
            b"pieces": os.urandom(pieces_blob),
            b"files": [
                {b"path": [p.encode("utf-8") for p in path], b"length": length}
                for path, length in files
            ],
        })


@pytest.fixture(scope="function")
def torrent_factory() -> TorrentFactory:
    return TorrentFactory()


# ============================================================================
# In-memory ut_metadata peer
# ============================================================================

PEER_UT_METADATA_ID = 3
MSG_HAVE = 4
KEEP_ALIVE = b"\x00\x00\x00\x00"


@dataclass
class MockPeer:
    """
    Localhost peer serving metadata over BEP-9.

    [MODES]
    - ok: serve the metadata honestly
    - bad_hash: serve bytes that do not match the info-hash
    - silent: accept TCP but never answer the handshake
    - reject: answer every piece request with a reject
    - no_extension: handshake without the extension bit
    - stall: finish both handshakes, then ignore every request
    - keepalive: like stall, but keep the link busy with keep-alives
      and non-extended frames
    - out_of_range: answer with a piece index past the last piece
    - unsolicited: answer with the piece after the requested one
    - short_piece: answer with one byte missing
    - size_change: answer with a different total_size
    """
    metadata: bytes
    mode: str = "ok"
    host: str = "127.0.0.1"
    port: int = 0
    connections: int = 0
    requests: List[int] = field(default_factory=list)
    _server: Optional[asyncio.AbstractServer] = None
    _writers: List[asyncio.StreamWriter] = field(default_factory=list)

    @property
    def address(self) -> tuple:
        return (self.host, self.port)

    def _served_bytes(self) -> bytes:
        if self.mode == "bad_hash":
            return bytes(b ^ 0xFF for b in self.metadata)
        return self.metadata

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def _piece_reply(self, served: bytes, piece: int) -> bytes:
        start = piece * METADATA_PIECE_SIZE
        data = served[start:start + METADATA_PIECE_SIZE]
        total_size = len(served)

        if self.mode == "out_of_range":
            piece = -(-len(served) // METADATA_PIECE_SIZE) + 5
        elif self.mode == "unsolicited":
            piece += 1
        elif self.mode == "short_piece":
            data = data[:-1]
        elif self.mode == "size_change":
            total_size += 1

        return build_metadata_data(LOCAL_UT_METADATA_ID, piece, total_size, data)

    async def _chatter(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Keep-alive and HAVE frames every 100ms until the client hangs up."""
        while not reader.at_eof():
            writer.write(KEEP_ALIVE)
            writer.write(frame(MSG_HAVE, (0).to_bytes(4, "big")))
            await writer.drain()
            await asyncio.sleep(0.1)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            remote = Handshake.unpack(await reader.readexactly(68))

            if self.mode == "silent":
                await reader.read()  # returns once the client gives up
                return

            if self.mode == "no_extension":
                reply = Handshake(info_hash=remote.info_hash, peer_id=generate_peer_id())
            else:
                reply = Handshake.for_metadata(remote.info_hash, generate_peer_id())
            writer.write(reply.pack())

            served = self._served_bytes()
            writer.write(build_extended(EXT_HANDSHAKE_ID, encode({
                b"m": {b"ut_metadata": PEER_UT_METADATA_ID},
                b"metadata_size": len(served),
            })))
            await writer.drain()

            while True:
                message = await read_frame(reader)
                if message is None or message[0] != MSG_EXTENDED:
                    continue
                ext_id, body = split_extended(message[1])
                if ext_id != PEER_UT_METADATA_ID:
                    continue

                request = parse_metadata_message(body)
                if request.msg_type != UT_REQUEST:
                    continue
                self.requests.append(request.piece)

                if self.mode == "stall":
                    continue
                if self.mode == "keepalive":
                    await self._chatter(reader, writer)
                    return

                if self.mode == "reject":
                    writer.write(build_metadata_reject(LOCAL_UT_METADATA_ID, request.piece))
                else:
                    writer.write(self._piece_reply(served, request.piece))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError, ProtocolViolation):
            pass
        finally:
            writer.close()


class PeerFactory:
    """
    Factory for spawning mock peers.

    [USAGE]
        peer = await peer_factory.create(torrent.raw)
        peer = await peer_factory.create(torrent.raw, mode="silent")
    """

    def __init__(self):
        self.peers: List[MockPeer] = []

    async def create(self, metadata: bytes, mode: str = "ok") -> MockPeer:
        peer = MockPeer(metadata=metadata, mode=mode)
        await peer.start()
        self.peers.append(peer)
        return peer

    async def cleanup(self) -> None:
        for peer in self.peers:
            await peer.stop()
        self.peers.clear()


@pytest_asyncio.fixture(scope="function")
async def peer_factory() -> AsyncGenerator[PeerFactory, None]:
    factory = PeerFactory()
    yield factory
    await factory.cleanup()


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def async_timeout():
    """Helper for async test timeouts."""
    async def _timeout(coro, seconds: float = 5.0):
        return await asyncio.wait_for(coro, timeout=seconds)
    return _timeout
