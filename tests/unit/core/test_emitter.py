"""
Unit Tests for Result Emitter
=============================

[UNIT] Info dictionary -> TorrentRecord mapping and publication.
"""

import asyncio
import dataclasses

import pytest

from harvester.emitter import FileEntry, ResultEmitter, TorrentRecord, build_record


INFO_HASH = bytes.fromhex("aa" * 20)


class TestBuildRecord:
    """Test the total mapping from info dictionaries."""

    def test_single_file(self):
        record = build_record(INFO_HASH, {b"name": b"a.txt", b"length": 100})

        assert record.name == "a.txt"
        assert record.length == 100
        assert record.files == ()
        assert record.to_dict() == {
            "infohash": "aa" * 20,
            "name": "a.txt",
            "length": 100,
        }

    def test_multi_file(self):
        record = build_record(INFO_HASH, {
            b"name": b"album",
            b"files": [
                {b"path": [b"cd1", b"01.flac"], b"length": 5000},
                {b"path": [b"cover.jpg"], b"length": 300},
            ],
        })

        assert record.files == (
            FileEntry(path=("cd1", "01.flac"), length=5000),
            FileEntry(path=("cover.jpg",), length=300),
        )
        assert record.total_size == 5300
        assert record.to_dict() == {
            "infohash": "aa" * 20,
            "name": "album",
            "files": [
                {"path": ["cd1", "01.flac"], "length": 5000},
                {"path": ["cover.jpg"], "length": 300},
            ],
        }

    def test_utf8_variants_preferred(self):
        record = build_record(INFO_HASH, {
            b"name": b"\xcf\xf0\xe8\xe2\xe5\xf2",  # cp1251
            b"name.utf-8": "Привет".encode("utf-8"),
            b"length": 1,
        })
        assert record.name == "Привет"

    def test_malformed_utf8_variant_falls_back(self):
        record = build_record(INFO_HASH, {
            b"name": b"plain",
            b"name.utf-8": 7,
            b"files": [{b"path": [b"a"], b"path.utf-8": b"not-a-list", b"length": 1}],
        })
        assert record.name == "plain"
        assert record.files == (FileEntry(path=("a",), length=1),)

    def test_empty_name_kept(self):
        record = build_record(INFO_HASH, {b"name": b"", b"length": 3})
        assert record.name == ""
        assert record.to_dict()["name"] == ""

    def test_zero_length_single_file(self):
        record = build_record(INFO_HASH, {b"name": b"empty", b"length": 0})
        assert record.length == 0
        assert "length" not in record.to_dict()

    @pytest.mark.parametrize("info", [
        {},
        {b"length": 100},
        {b"name": 42, b"length": 100},
        {b"name": b"x"},
        {b"name": b"x", b"length": b"100"},
        {b"name": b"x", b"length": -1},
        {b"name": b"x", b"files": [b"not-a-dict"]},
        {b"name": b"x", b"files": [{b"path": [b"ok", 5], b"length": 1}]},
        {b"name": b"x", b"files": [{b"path": [b"ok"]}]},
        {b"name": b"x", b"files": [{b"path": [b"ok"], b"length": -3}]},
    ])
    def test_discarded(self, info):
        assert build_record(INFO_HASH, info) is None

    def test_record_is_immutable(self):
        record = build_record(INFO_HASH, {b"name": b"a", b"length": 1})
        with pytest.raises(dataclasses.FrozenInstanceError):
            record.name = "b"


class TestResultEmitter:
    """Test publication to consumers."""

    def test_emit_and_count(self, metrics):
        emitter = ResultEmitter(metrics=metrics)

        assert emitter.emit(INFO_HASH, {b"name": b"a.txt", b"length": 100})
        assert not emitter.emit(INFO_HASH, {b"length": 100})

        assert metrics.value("records_emitted_total") == 1
        assert metrics.value("records_discarded_total") == 1
        assert [r.name for r in emitter.drain()] == ["a.txt"]

    @pytest.mark.asyncio
    async def test_records_preserve_order(self, metrics):
        emitter = ResultEmitter(metrics=metrics)
        for i in range(5):
            emitter.emit(bytes([i]) * 20, {b"name": f"t{i}".encode(), b"length": i + 1})

        received = []
        async for record in emitter.records():
            received.append(record)
            if len(received) == 5:
                break

        assert [r.name for r in received] == ["t0", "t1", "t2", "t3", "t4"]
        assert all(isinstance(r, TorrentRecord) for r in received)
