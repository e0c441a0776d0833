"""Tests for AES-128 segment decryption and key handling."""

import asyncio

import pytest
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

from conftest import FakeTransport

from vidresolve.core.decryptor import SegmentDecryptor
from vidresolve.core.errors import InvalidPadding, KeyFetchFailed, Rejected, UnsupportedMethod
from vidresolve.core.models import EncryptionContext, KeyReference, Segment

KEY_URI = "https://keys.example.com/k1"
OTHER_KEY_URI = "https://keys.example.com/k2"
KEY = bytes(range(16))
OTHER_KEY = bytes(range(16, 32))
IV = b"\x0f" * 16
PAYLOAD = b"\x47" + b"transport stream payload " * 20


def encrypt(data: bytes, key: bytes, iv: bytes) -> bytes:
    return AES.new(key, AES.MODE_CBC, iv=iv).encrypt(pad(data, AES.block_size))


def segment(sequence: int, key: KeyReference = None) -> Segment:
    return Segment(sequence=sequence, uri=f"https://cdn.example.com/s{sequence}.ts", key=key)


def test_explicit_iv_round_trip() -> None:
    transport = FakeTransport({KEY_URI: KEY})
    decryptor = SegmentDecryptor(transport)
    key_ref = KeyReference("AES-128", KEY_URI, IV)

    result = asyncio.run(decryptor.decrypt_segment(segment(5, key_ref), encrypt(PAYLOAD, KEY, IV)))
    assert result == PAYLOAD


def test_iv_defaults_to_sequence_number() -> None:
    context = EncryptionContext(key=KEY)
    assert context.iv_for(7) == b"\x00" * 15 + b"\x07"

    data = encrypt(PAYLOAD, KEY, context.iv_for(300))
    assert SegmentDecryptor(FakeTransport()).decrypt(context, data, 300) == PAYLOAD


@pytest.mark.parametrize("plaintext", [b"\x00" * 32, b"A" * 31 + b"\x11", b"B" * 30 + b"\x03\x02"])
def test_bad_padding_is_reported(plaintext) -> None:
    decryptor = SegmentDecryptor(FakeTransport())
    context = EncryptionContext(key=KEY, iv=IV)
    data = AES.new(KEY, AES.MODE_CBC, iv=IV).encrypt(plaintext)
    with pytest.raises(InvalidPadding):
        decryptor.decrypt(context, data, 1)


def test_truncated_segments_are_reported() -> None:
    decryptor = SegmentDecryptor(FakeTransport())
    context = EncryptionContext(key=KEY, iv=IV)
    data = encrypt(PAYLOAD, KEY, IV)
    with pytest.raises(InvalidPadding):
        decryptor.decrypt(context, data[:-3], 1)
    with pytest.raises(InvalidPadding):
        decryptor.decrypt(context, b"", 1)


def test_keys_are_fetched_once_per_uri_and_rotate() -> None:
    transport = FakeTransport({KEY_URI: KEY, OTHER_KEY_URI: OTHER_KEY})
    decryptor = SegmentDecryptor(transport)
    first = KeyReference("AES-128", KEY_URI)
    second = KeyReference("AES-128", OTHER_KEY_URI)

    async def scenario():
        out = []
        for sequence, key_ref, key in ((1, first, KEY), (2, first, KEY), (3, second, OTHER_KEY)):
            data = encrypt(PAYLOAD + bytes([sequence]), key, sequence.to_bytes(16, "big"))
            out.append(await decryptor.decrypt_segment(segment(sequence, key_ref), data))
        return out

    results = asyncio.run(scenario())
    assert results == [PAYLOAD + b"\x01", PAYLOAD + b"\x02", PAYLOAD + b"\x03"]
    assert transport.count(KEY_URI) == 1
    assert transport.count(OTHER_KEY_URI) == 1

    decryptor.forget()
    asyncio.run(decryptor.context_for(first))
    assert transport.count(KEY_URI) == 2


def test_clear_segments_pass_through() -> None:
    decryptor = SegmentDecryptor(FakeTransport())
    assert asyncio.run(decryptor.decrypt_segment(segment(1), b"clear")) == b"clear"
    assert asyncio.run(decryptor.decrypt_segment(segment(2, KeyReference("NONE")), b"clear")) == b"clear"


@pytest.mark.parametrize("routes,key_ref", [
    ({}, KeyReference("AES-128", KEY_URI)),
    ({KEY_URI: Rejected(403, KEY_URI)}, KeyReference("AES-128", KEY_URI)),
    ({KEY_URI: b"short"}, KeyReference("AES-128", KEY_URI)),
    ({}, KeyReference("AES-128", None)),
])
def test_key_fetch_failures(routes, key_ref) -> None:
    decryptor = SegmentDecryptor(FakeTransport(routes))
    with pytest.raises(KeyFetchFailed):
        asyncio.run(decryptor.context_for(key_ref))


def test_sample_aes_is_unsupported() -> None:
    decryptor = SegmentDecryptor(FakeTransport({KEY_URI: KEY}))
    with pytest.raises(UnsupportedMethod):
        asyncio.run(decryptor.context_for(KeyReference("SAMPLE-AES", KEY_URI)))
