"""Encoding of control responses on the wire."""

from __future__ import annotations

import json
import struct
from typing import Any

import zstandard
from nacl.public import Box, PrivateKey, PublicKey

from .keys import ZSTD_COMPRESSION

RESERVED_RESPONSE_HEADER_SIZE = 4


def _is_noise(machine_key: PublicKey | None) -> bool:
    return machine_key is None or not any(bytes(machine_key))


def _to_json(resp: Any) -> bytes:
    payload = resp.to_json() if hasattr(resp, "to_json") else resp
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def seal_to(private_key: PrivateKey, machine_key: PublicKey, payload: bytes) -> bytes:
    """Encrypt ``payload`` for ``machine_key``; the nonce leads the result."""
    return bytes(Box(private_key, machine_key).encrypt(payload))


def marshal_response(resp: Any, private_key: PrivateKey, machine_key: PublicKey | None) -> bytes:
    """Encode a response as JSON, sealed unless the client speaks Noise."""
    body = _to_json(resp)
    if _is_noise(machine_key):
        return body
    return seal_to(private_key, machine_key, body)


def marshal_map_response(
    resp: Any,
    private_key: PrivateKey,
    machine_key: PublicKey | None,
    compression: str,
) -> bytes:
    """Encode a map response with optional zstd, sealing and a length header."""
    body = _to_json(resp)
    if compression == ZSTD_COMPRESSION:
        body = zstandard.ZstdCompressor().compress(body)
    if not _is_noise(machine_key):
        body = seal_to(private_key, machine_key, body)
    return struct.pack("<I", len(body)) + body


def keep_alive_response(
    private_key: PrivateKey, machine_key: PublicKey | None, compression: str
) -> bytes:
    """Encode the keep-alive map response."""
    return marshal_map_response({"KeepAlive": True}, private_key, machine_key, compression)