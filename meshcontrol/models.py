"""Control-plane records and the JSON messages exchanged with clients."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .addresses import IPAddress, IPInterface, string_to_ip_prefix
from .keys import HeadscaleError

ZERO_TIME_TEXT = "0001-01-01T00:00:00Z"
DEFAULT_DOMAIN = "tailnet.local"

REGISTER_METHOD_AUTH_KEY = "authkey"
REGISTER_METHOD_CLI = "cli"
REGISTER_METHOD_OIDC = "oidc"

_TIME_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})"
)


class RecordNotFound(HeadscaleError):
    """A requested record does not exist."""

    def __init__(self, message: str = "record not found") -> None:
        super().__init__(message)


def parse_time(text: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp; the zero time and absence give None."""
    if not text or text == ZERO_TIME_TEXT:
        return None
    match = _TIME_RE.fullmatch(text)
    if not match:
        raise ValueError(f"invalid timestamp: {text!r}")
    base, fraction, zone = match.groups()
    micro = (fraction or ".")[1:7].ljust(6, "0")
    zone = "+00:00" if zone == "Z" else zone
    parsed = datetime.fromisoformat(f"{base}.{micro}{zone}")
    if parsed.year == 1 and parsed.replace(tzinfo=None) == datetime(1, 1, 1):
        return None
    return parsed.astimezone(timezone.utc)


def format_time(value: datetime | None) -> str:
    """Format a timestamp as RFC 3339 in UTC; None gives the zero time."""
    if value is None:
        return ZERO_TIME_TEXT
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def _load_object(data: Any) -> dict[str, Any]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data).decode("utf-8")
    if isinstance(data, str):
        data = json.loads(data)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def _empty_user() -> dict[str, Any]:
    return {
        "ID": 0,
        "LoginName": "",
        "DisplayName": "",
        "ProfilePicURL": "",
        "Domain": "",
        "Logins": None,
        "Created": ZERO_TIME_TEXT,
    }


def _empty_login() -> dict[str, Any]:
    return {
        "ID": 0,
        "Provider": "",
        "LoginName": "",
        "DisplayName": "",
        "ProfilePicURL": "",
        "Domain": "",
    }


@dataclass
class HostInfo:
    """What a client reports about the host it runs on."""

    hostname: str = ""
    routable_ips: list[IPInterface] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Any) -> HostInfo:
        if data is None:
            return cls()
        obj = _load_object(data)
        return cls(
            hostname=obj.get("Hostname") or "",
            routable_ips=string_to_ip_prefix(obj.get("RoutableIPs") or []),
            raw=dict(obj),
        )


@dataclass
class Namespace:
    """A group of machines owned together."""

    id: int = 0
    name: str = ""
    created_at: datetime | None = None

    def to_user(self) -> dict[str, Any]:
        """Describe the namespace as the user record clients expect."""
        return {
            "ID": self.id,
            "LoginName": self.name,
            "DisplayName": self.name,
            "ProfilePicURL": "",
            "Domain": DEFAULT_DOMAIN,
            "Logins": [],
            "Created": ZERO_TIME_TEXT,
        }

    def to_login(self) -> dict[str, Any]:
        """Describe the namespace as the login record clients expect."""
        return {
            "ID": self.id,
            "Provider": "",
            "LoginName": self.name,
            "DisplayName": self.name,
            "ProfilePicURL": "",
            "Domain": DEFAULT_DOMAIN,
        }


@dataclass
class Machine:
    """A registered node of the network."""

    id: int = 0
    machine_key: str = ""
    node_key: str = ""
    disco_key: str = ""
    ip_addresses: list[IPAddress] = field(default_factory=list)
    hostname: str = ""
    given_name: str = ""
    namespace_id: int = 0
    namespace: Namespace = field(default_factory=Namespace)
    register_method: str = ""
    forced_tags: list[str] = field(default_factory=list)
    auth_key_id: int | None = None
    last_seen: datetime | None = None
    last_successful_update: datetime | None = None
    expiry: datetime | None = None
    host_info: HostInfo = field(default_factory=HostInfo)
    endpoints: list[str] = field(default_factory=list)
    enabled_routes: list[IPInterface] = field(default_factory=list)

    def is_expired(self) -> bool:
        """True once an expiry is set and lies in the past."""
        if self.expiry is None:
            return False
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) > expiry


@dataclass
class RegisterRequest:
    """A client's request to register or refresh its node key."""

    version: int = 0
    node_key: str = ""
    old_node_key: str = ""
    auth_key: str = ""
    expiry: datetime | None = None
    followup: str = ""
    hostinfo: HostInfo = field(default_factory=HostInfo)

    @classmethod
    def from_json(cls, data: Any) -> RegisterRequest:
        """Build a request from its JSON form; raise ValueError if malformed."""
        obj = _load_object(data)
        auth = obj.get("Auth") or {}
        if not isinstance(auth, dict):
            raise ValueError("Auth must be an object")
        return cls(
            version=int(obj.get("Version") or 0),
            node_key=obj.get("NodeKey") or "",
            old_node_key=obj.get("OldNodeKey") or "",
            auth_key=auth.get("AuthKey") or "",
            expiry=parse_time(obj.get("Expiry")),
            followup=obj.get("Followup") or "",
            hostinfo=HostInfo.from_json(obj.get("Hostinfo")),
        )


@dataclass
class RegisterResponse:
    """The server's answer to a registration request."""

    user: dict[str, Any] = field(default_factory=_empty_user)
    login: dict[str, Any] = field(default_factory=_empty_login)
    node_key_expired: bool = False
    machine_authorized: bool = False
    auth_url: str = ""
    error: str = ""

    def to_json(self) -> dict[str, Any]:
        """Return the JSON-ready form of the response."""
        return {
            "User": self.user,
            "Login": self.login,
            "NodeKeyExpired": self.node_key_expired,
            "MachineAuthorized": self.machine_authorized,
            "AuthURL": self.auth_url,
            "Error": self.error,
        }


@dataclass
class MapRequest:
    """A client's request for the network map."""

    version: int = 0
    compress: str = ""
    keep_alive: bool = False
    node_key: str = ""
    disco_key: str = ""
    endpoints: list[str] = field(default_factory=list)
    hostinfo: HostInfo = field(default_factory=HostInfo)
    omit_peers: bool = False
    stream: bool = False
    read_only: bool = False

    @classmethod
    def from_json(cls, data: Any) -> MapRequest:
        """Build a request from its JSON form; raise ValueError if malformed."""
        obj = _load_object(data)
        return cls(
            version=int(obj.get("Version") or 0),
            compress=obj.get("Compress") or "",
            keep_alive=bool(obj.get("KeepAlive")),
            node_key=obj.get("NodeKey") or "",
            disco_key=obj.get("DiscoKey") or "",
            endpoints=list(obj.get("Endpoints") or []),
            hostinfo=HostInfo.from_json(obj.get("Hostinfo")),
            omit_peers=bool(obj.get("OmitPeers")),
            stream=bool(obj.get("Stream")),
            read_only=bool(obj.get("ReadOnly")),
        )