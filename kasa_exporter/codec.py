"""Wire codec for the TP-Link smart home protocol.

Payloads are compact JSON run through an XOR autokey cipher: every plaintext
byte is XORed with the current key, and the ciphertext byte just produced
becomes the next key. TCP messages carry a 4-byte big-endian length header in
front of the ciphertext; UDP datagrams are sent bare.
"""
from __future__ import annotations

import json
import struct
from typing import Any

from .errors import InvalidPayload, TruncatedFrame

INITIAL_KEY = 171
HEADER = struct.Struct(">I")


class XorAutokeyCipher:
    def __init__(self, key: int = INITIAL_KEY) -> None:
        self.key = key & 0xFF

    def encrypt(self, plaintext: bytes) -> bytes:
        key = self.key
        out = bytearray(len(plaintext))
        for i, b in enumerate(plaintext):
            key ^= b
            out[i] = key
        self.key = key
        return bytes(out)

    def decrypt(self, ciphertext: bytes) -> bytes:
        key = self.key
        out = bytearray(len(ciphertext))
        for i, b in enumerate(ciphertext):
            out[i] = key ^ b
            key = b
        self.key = key
        return bytes(out)


def encrypt(plaintext: bytes) -> bytes:
    return XorAutokeyCipher().encrypt(plaintext)


def decrypt(ciphertext: bytes) -> bytes:
    return XorAutokeyCipher().decrypt(ciphertext)


def dump_payload(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def load_payload(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidPayload(f"invalid payload: {e}") from e


def frame_length(header: bytes) -> int:
    if len(header) < HEADER.size:
        raise TruncatedFrame(HEADER.size, len(header))
    return HEADER.unpack_from(header)[0]


def encode(payload: Any) -> bytes:
    body = encrypt(dump_payload(payload))
    return HEADER.pack(len(body)) + body


def decode(buffer: bytes) -> Any:
    """Decode one length-prefixed frame; bytes past the frame are ignored."""
    length = frame_length(buffer)
    available = len(buffer) - HEADER.size
    if available < length:
        raise TruncatedFrame(length, available)
    return load_payload(decrypt(buffer[HEADER.size:HEADER.size + length]))


def encode_datagram(payload: Any) -> bytes:
    return encrypt(dump_payload(payload))


def decode_datagram(datagram: bytes) -> Any:
    return load_payload(decrypt(datagram))
