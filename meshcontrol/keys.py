"""Key text formats, sealed-message decoding and small helpers."""

from __future__ import annotations

import base64
import json
import os
import re
import secrets
from typing import Any, Iterable

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey

NODE_PUBLIC_HEX_PREFIX = "nodekey:"
MACHINE_PUBLIC_HEX_PREFIX = "mkey:"
DISCO_PUBLIC_HEX_PREFIX = "discokey:"
PRIVATE_HEX_PREFIX = "privkey:"

PERMISSION_FALLBACK = 0o700
ZSTD_COMPRESSION = "zstd"

NODE_PUBLIC_KEY_REGEX = re.compile(r"nodekey:[a-fA-F0-9]+")

_KEY_SIZE = 32
_NONCE_SIZE = Box.NONCE_SIZE
_HEX_KEY = re.compile(r"[0-9a-fA-F]{64}")
_OCTAL = re.compile(r"[0-7]+")


class HeadscaleError(Exception):
    """Base class for errors raised by the control server."""


class CannotDecryptResponse(HeadscaleError):
    """A sealed message could not be opened."""

    def __init__(self, message: str = "cannot decrypt response") -> None:
        super().__init__(message)


def _key_hex(key: Any, prefix: str) -> str:
    if key is None:
        return "00" * _KEY_SIZE
    if isinstance(key, str):
        return key.removeprefix(prefix)
    return bytes(key).hex()


def machine_public_key_strip_prefix(machine_key: Any) -> str:
    """Return the hex text of a machine key without its prefix."""
    return _key_hex(machine_key, MACHINE_PUBLIC_HEX_PREFIX)


def node_public_key_strip_prefix(node_key: Any) -> str:
    """Return the hex text of a node key without its prefix."""
    return _key_hex(node_key, NODE_PUBLIC_HEX_PREFIX)


def disco_public_key_strip_prefix(disco_key: Any) -> str:
    """Return the hex text of a disco key without its prefix."""
    return _key_hex(disco_key, DISCO_PUBLIC_HEX_PREFIX)


def _ensure_prefix(text: str, prefix: str) -> str:
    return text if text.startswith(prefix) else prefix + text


def machine_public_key_ensure_prefix(machine_key: str) -> str:
    return _ensure_prefix(machine_key, MACHINE_PUBLIC_HEX_PREFIX)


def node_public_key_ensure_prefix(node_key: str) -> str:
    return _ensure_prefix(node_key, NODE_PUBLIC_HEX_PREFIX)


def disco_public_key_ensure_prefix(disco_key: str) -> str:
    return _ensure_prefix(disco_key, DISCO_PUBLIC_HEX_PREFIX)


def private_key_ensure_prefix(private_key: str) -> str:
    return _ensure_prefix(private_key, PRIVATE_HEX_PREFIX)


def parse_machine_public_key(text: str) -> PublicKey:
    """Parse a prefixed hex machine key; raise ValueError if malformed."""
    if not text.startswith(MACHINE_PUBLIC_HEX_PREFIX):
        raise ValueError(f"key hex has the wrong prefix: {text!r}")
    body = text[len(MACHINE_PUBLIC_HEX_PREFIX):]
    if not _HEX_KEY.fullmatch(body):
        raise ValueError(f"malformed machine key: {text!r}")
    return PublicKey(bytes.fromhex(body))


def format_machine_public_key(public_key: Any) -> str:
    """Format a machine key as prefixed lower-case hex."""
    return MACHINE_PUBLIC_HEX_PREFIX + machine_public_key_strip_prefix(public_key)


def decode(msg: bytes, public_key: PublicKey, private_key: PrivateKey) -> Any:
    """Open a message sealed by ``public_key`` to ``private_key`` and parse its JSON."""
    if len(msg) < _NONCE_SIZE:
        raise CannotDecryptResponse()
    try:
        decrypted = Box(private_key, public_key).decrypt(bytes(msg))
    except CryptoError as err:
        raise CannotDecryptResponse() from err
    return json.loads(decrypted)


def generate_random_bytes(n: int) -> bytes:
    """Return ``n`` cryptographically secure random bytes."""
    return secrets.token_bytes(n)


def generate_random_string_url_safe(n: int) -> str:
    """Return ``n`` random bytes as unpadded URL-safe base64."""
    raw = generate_random_bytes(n)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_random_string_dns_safe(size: int) -> str:
    """Return a random lower-case string of ``size`` DNS-safe characters."""
    text = ""
    while len(text) < size:
        text = generate_random_string_url_safe(size)
        text = text.replace("_", "").replace("-", "").lower()
    return text[:size]


def is_string_in_slice(items: Iterable[str], value: str) -> bool:
    return value in items


def absolute_path_from_config_path(path: str, config_file: str | None) -> str:
    """Resolve a relative path against the directory of the config file in use."""
    if path and not path.startswith(os.sep) and config_file:
        directory = os.path.dirname(config_file)
        if directory:
            return os.path.join(directory, path)
    return path


def get_file_mode(mode_str: str | None) -> int:
    """Parse an octal permission string, falling back to 0o700."""
    if not mode_str or not _OCTAL.fullmatch(mode_str):
        return PERMISSION_FALLBACK
    mode = int(mode_str, 8)
    if mode >= 1 << 64:
        return PERMISSION_FALLBACK
    return mode