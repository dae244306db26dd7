"""
Unit Tests for Bencode Codec
============================

[UNIT] Decoder strictness, canonical encoding, streaming reads,
typed accessors and robustness against hostile input.
"""

import io
import os
import random

import pytest

from harvester.bencode import (
    MAX_DEPTH,
    decode,
    decode_prefix,
    encode,
    ensure_dict,
    get_bytes,
    get_dict,
    get_int,
    get_list,
    get_str,
    read_value,
)
from harvester.errors import BencodeTypeError, DecodeError


class TestDecode:
    """Test decoding of well-formed values."""

    def test_scalars(self):
        assert decode(b"i42e") == 42
        assert decode(b"i-7e") == -7
        assert decode(b"i0e") == 0
        assert decode(b"4:spam") == b"spam"
        assert decode(b"0:") == b""

    def test_containers(self):
        assert decode(b"l4:spami1ee") == [b"spam", 1]
        assert decode(b"d3:cow3:moo4:spam4:eggse") == {b"cow": b"moo", b"spam": b"eggs"}

    def test_unsorted_keys_accepted(self):
        """Keys in any order are accepted on decode."""
        assert decode(b"d1:bi2e1:ai1ee") == {b"a": 1, b"b": 2}

    def test_binary_strings(self):
        payload = bytes(range(256))
        assert decode(b"256:" + payload) == payload

    def test_decode_prefix_returns_offset(self):
        """ut_metadata data messages carry a raw trailer after the header."""
        header = encode({b"msg_type": 1, b"piece": 0})
        value, offset = decode_prefix(header + b"RAWPIECE")
        assert value == {b"msg_type": 1, b"piece": 0}
        assert offset == len(header)


class TestDecodeErrors:
    """Test rejection of malformed input."""

    @pytest.mark.parametrize("data", [
        b"",
        b"i42",
        b"ie",
        b"i-e",
        b"i03e",
        b"i-0e",
        b"i1.5e",
        b"5:abc",
        b"03:abc",
        b"l",
        b"d3:key",
        b"di1ei2ee",
        b"x",
        b"e",
    ])
    def test_malformed(self, data):
        with pytest.raises(DecodeError):
            decode(data)

    def test_trailing_data(self):
        with pytest.raises(DecodeError) as exc:
            decode(b"i1eXYZ")
        assert exc.value.offset == 3

    def test_duplicate_keys(self):
        with pytest.raises(DecodeError):
            decode(b"d1:ai1e1:ai2ee")

    def test_error_carries_offset(self):
        with pytest.raises(DecodeError) as exc:
            decode(b"l4:spamxe")
        assert exc.value.offset == 7

    def test_nesting_limit(self):
        deep = b"l" * (MAX_DEPTH + 2) + b"e" * (MAX_DEPTH + 2)
        with pytest.raises(DecodeError):
            decode(deep)

    def test_nesting_within_limit(self):
        nested = b"l" * 10 + b"e" * 10
        assert decode(nested) == [[[[[[[[[[]]]]]]]]]]

    def test_declared_length_beyond_limit(self):
        """Declared string length is checked before any read."""
        with pytest.raises(DecodeError):
            decode(b"999999999:x")

    def test_max_length(self):
        with pytest.raises(DecodeError):
            decode(b"4:spam", max_length=3)


class TestEncode:
    """Test canonical encoding."""

    def test_sorted_keys(self):
        assert encode({b"b": 1, b"a": 2}) == b"d1:ai2e1:bi1ee"

    def test_str_is_utf8(self):
        assert encode("ключ") == encode("ключ".encode("utf-8"))
        assert encode({"a": "b"}) == b"d1:a1:be"

    def test_tuple_as_list(self):
        assert encode((1, 2)) == b"li1ei2ee"

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            encode(1.5)

    def test_colliding_keys(self):
        with pytest.raises(ValueError):
            encode({"a": 1, b"a": 2})

    def test_round_trip(self):
        value = {
            b"name": b"a.txt",
            b"files": [{b"path": [b"dir", b"f"], b"length": 10}],
            b"neg": -5,
            b"blob": os.urandom(64),
        }
        assert decode(encode(value)) == value


class TestStreaming:
    """Test read_value over file-like streams."""

    def test_reads_exactly_one_value(self):
        stream = io.BytesIO(b"d1:ai1ee" + b"REST")
        assert read_value(stream, 1024) == {b"a": 1}
        assert stream.read() == b"REST"

    def test_limit_enforced(self):
        stream = io.BytesIO(b"10:abcdefghij")
        with pytest.raises(DecodeError):
            read_value(stream, 5)

    def test_truncated_stream(self):
        with pytest.raises(DecodeError):
            read_value(io.BytesIO(b"l4:spam"), 1024)


class TestAccessors:
    """Test typed accessors."""

    def setup_method(self):
        self.info = decode(b"d6:lengthi100e4:name5:a.txt5:filesle4:infod1:xi1eee")

    def test_typed_values(self):
        assert get_int(self.info, "length") == 100
        assert get_bytes(self.info, "name") == b"a.txt"
        assert get_str(self.info, "name") == "a.txt"
        assert get_list(self.info, "files") == []
        assert get_dict(self.info, "info") == {b"x": 1}

    def test_wrong_type(self):
        with pytest.raises(BencodeTypeError) as exc:
            get_int(self.info, "name")
        assert exc.value.key == "name"

    def test_missing_key(self):
        with pytest.raises(BencodeTypeError):
            get_bytes(self.info, "comment")
        assert get_bytes(self.info, "comment", None) is None
        assert get_str(self.info, "comment", "") == ""

    def test_ensure_dict(self):
        assert ensure_dict({}) == {}
        with pytest.raises(BencodeTypeError):
            ensure_dict([1, 2])

    def test_accessor_error_is_decode_error(self):
        with pytest.raises(DecodeError):
            get_list(self.info, "length")


class TestRobustness:
    """Hostile input never escapes as anything but DecodeError."""

    SAMPLE = encode({
        b"t": b"aa",
        b"y": b"q",
        b"q": b"announce_peer",
        b"a": {b"id": b"x" * 20, b"info_hash": b"y" * 20, b"port": 6881, b"token": b"tok"},
        b"l": [1, [2, [3]], {b"k": b"v"}],
    })

    def test_every_truncation(self):
        for cut in range(len(self.SAMPLE)):
            with pytest.raises(DecodeError):
                decode(self.SAMPLE[:cut])

    def test_random_mutations(self):
        rng = random.Random(1234)
        for _ in range(2000):
            data = bytearray(self.SAMPLE)
            for _ in range(rng.randint(1, 4)):
                data[rng.randrange(len(data))] = rng.randrange(256)
            try:
                decode(bytes(data))
            except DecodeError:
                pass

    def test_random_garbage(self):
        rng = random.Random(99)
        for _ in range(500):
            data = bytes(rng.randrange(256) for _ in range(rng.randint(0, 64)))
            try:
                decode(data)
            except DecodeError:
                pass
