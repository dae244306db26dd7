"""
Metadata Session Integration Tests
==================================

[INTEGRATION] MetadataSession against localhost ut_metadata peers.
"""

import asyncio

import pytest

from harvester.errors import ProtocolViolation, SessionTimeout, ValidationFailure
from harvester.metadata import MetadataSession, SessionLimits, SessionState


FAST = SessionLimits(connect_timeout=1.0, handshake_timeout=0.5, piece_timeout=0.5, deadline=3.0)


def session_for(torrent, peer, limits: SessionLimits = FAST) -> MetadataSession:
    return MetadataSession(torrent.info_hash, peer.host, peer.port, limits=limits)


class TestSuccessfulFetch:
    """Honest peers."""

    @pytest.mark.asyncio
    async def test_single_piece(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single("a.txt", 100)
        peer = await peer_factory.create(torrent.raw)
        session = session_for(torrent, peer)

        info = await session.run()

        assert info == torrent.info
        assert session.state == SessionState.COMPLETE
        assert session.metadata_size == len(torrent.raw)
        assert session.piece_count == 1
        assert peer.requests == [0]
        assert session.duration > 0

    @pytest.mark.asyncio
    async def test_multiple_pieces_in_order(self, torrent_factory, peer_factory):
        torrent = torrent_factory.multi(
            "album",
            [(["cd1", "01.flac"], 5000), (["cover.jpg"], 300)],
            pieces_blob=40000,
        )
        assert torrent.pieces == 3
        peer = await peer_factory.create(torrent.raw)
        session = session_for(torrent, peer)

        info = await session.run()

        assert info[b"name"] == b"album"
        assert len(info[b"files"]) == 2
        assert peer.requests == [0, 1, 2]
        assert session.is_complete

    @pytest.mark.asyncio
    async def test_preconnected_streams(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw)
        reader, writer = await asyncio.open_connection(peer.host, peer.port)

        session = MetadataSession(
            torrent.info_hash, peer.host, peer.port, limits=FAST, reader=reader, writer=writer,
        )

        assert await session.run() == torrent.info
        assert peer.connections == 1


class TestFailures:
    """Each failure ends in FAILED with the state it happened in."""

    @pytest.mark.asyncio
    async def test_hash_mismatch(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="bad_hash")
        session = session_for(torrent, peer)

        with pytest.raises(ValidationFailure):
            await session.run()

        assert session.state == SessionState.FAILED
        assert session.failed_in == SessionState.VALIDATING

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="silent")
        session = session_for(torrent, peer)

        with pytest.raises(SessionTimeout):
            await session.run()

        assert session.failed_in == SessionState.HANDSHAKING

    @pytest.mark.asyncio
    async def test_overall_deadline(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="silent")
        limits = SessionLimits(handshake_timeout=10.0, deadline=0.3)
        session = session_for(torrent, peer, limits)

        with pytest.raises(SessionTimeout, match="deadline"):
            await asyncio.wait_for(session.run(), timeout=2)

        assert session.duration < 2

    @pytest.mark.asyncio
    async def test_rejected_piece(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="reject")
        session = session_for(torrent, peer)

        with pytest.raises(ProtocolViolation):
            await session.run()

        assert session.failed_in == SessionState.REQUESTING_PIECES

    @pytest.mark.asyncio
    async def test_no_extension_support(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="no_extension")
        session = session_for(torrent, peer)

        with pytest.raises(ProtocolViolation, match="extension"):
            await session.run()

        assert session.failed_in == SessionState.HANDSHAKING

    @pytest.mark.asyncio
    async def test_unreachable_peer(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw)
        await peer.stop()  # nothing listens on this port any more
        session = session_for(torrent, peer)

        with pytest.raises(OSError):
            await session.run()

        assert session.failed_in == SessionState.DIALING

    @pytest.mark.asyncio
    async def test_cancellation(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="silent")
        session = MetadataSession(
            torrent.info_hash, peer.host, peer.port, limits=SessionLimits(deadline=30.0),
        )

        task = asyncio.create_task(session.run())
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state == SessionState.FAILED
        assert session.failed_in == SessionState.HANDSHAKING


class TestPieceExchange:
    """Peers that finish both handshakes and then misbehave."""

    @pytest.mark.asyncio
    async def test_ignored_request_times_out(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="stall")
        session = session_for(torrent, peer)

        with pytest.raises(SessionTimeout, match="requesting_pieces timeout"):
            await session.run()

        assert peer.requests == [0]
        assert session.failed_in == SessionState.REQUESTING_PIECES

    @pytest.mark.asyncio
    async def test_keepalives_do_not_extend_piece_timeout(self, torrent_factory, peer_factory):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode="keepalive")
        limits = SessionLimits(handshake_timeout=0.5, piece_timeout=0.5, deadline=5.0)
        session = session_for(torrent, peer, limits)

        with pytest.raises(SessionTimeout) as excinfo:
            await asyncio.wait_for(session.run(), timeout=4)

        assert "deadline" not in str(excinfo.value)
        assert session.failed_in == SessionState.REQUESTING_PIECES
        assert session.duration < 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode, message", [
        ("out_of_range", "out-of-range piece"),
        ("short_piece", "expected"),
        ("size_change", "changed total_size"),
    ])
    async def test_bad_piece_reply(self, torrent_factory, peer_factory, mode, message):
        torrent = torrent_factory.single()
        peer = await peer_factory.create(torrent.raw, mode=mode)
        session = session_for(torrent, peer)

        with pytest.raises(ProtocolViolation, match=message):
            await session.run()

        assert session.failed_in == SessionState.REQUESTING_PIECES

    @pytest.mark.asyncio
    async def test_unsolicited_piece(self, torrent_factory, peer_factory):
        torrent = torrent_factory.multi("album", [(["a.bin"], 1)], pieces_blob=40000)
        assert torrent.pieces > 1
        peer = await peer_factory.create(torrent.raw, mode="unsolicited")
        session = session_for(torrent, peer)

        with pytest.raises(ProtocolViolation, match="unsolicited piece 1"):
            await session.run()

        assert session.failed_in == SessionState.REQUESTING_PIECES
        assert 0 not in session.pieces
