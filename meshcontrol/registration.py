"""Machine registration over the legacy and Noise control protocols."""

from __future__ import annotations

import json
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Sequence

from nacl.public import PrivateKey, PublicKey

from .keys import (
    CannotDecryptResponse,
    HeadscaleError,
    decode,
    format_machine_public_key,
    machine_public_key_ensure_prefix,
    machine_public_key_strip_prefix,
    node_public_key_strip_prefix,
    parse_machine_public_key,
)
from .models import (
    REGISTER_METHOD_AUTH_KEY,
    Machine,
    Namespace,
    RecordNotFound,
    RegisterRequest,
    RegisterResponse,
)
from .swagger import HttpResponse
from .wire import marshal_response

log = logging.getLogger(__name__)

# Clients from this capability version on speak the Noise protocol.
NOISE_CAPABILITY_VERSION = 39

REGISTRATION_HOLDOFF = 5.0
REGISTER_CACHE_EXPIRATION = 15 * 60.0

_JSON = "application/json; charset=utf-8"
_TEXT = "text/plain; charset=utf-8"
_ZERO_KEY_HEX = "00" * 32
_INTEGER = re.compile(r"[+-]?\d+")


class _PreAuthKey(Protocol):
    id: int
    namespace: Namespace
    acl_tags: Sequence[str]


class _Store(Protocol):
    def get_machine_by_any_node_key(self, node_key: str, old_node_key: str) -> Machine: ...

    def generate_given_name(self, hostname: str) -> str: ...

    def check_key_validity(self, auth_key: str) -> _PreAuthKey: ...

    def refresh_machine(self, machine: Machine, expiry: datetime | None) -> None: ...

    def set_tags(self, machine: Machine, tags: list[str]) -> None: ...

    def register_machine(self, machine: Machine) -> Machine: ...

    def use_pre_auth_key(self, pre_auth_key: _PreAuthKey) -> None: ...

    def expire_machine(self, machine: Machine) -> None: ...

    def save(self, machine: Machine) -> None: ...


@dataclass
class _Entry:
    value: Any
    deadline: float


class _ExpiringCache:
    """A dictionary whose entries vanish after their time to live."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = _Entry(value, self._clock() + ttl)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.deadline:
            del self._entries[key]
            return None
        return entry.value

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None


def _node_hex(text: str) -> str:
    return node_public_key_strip_prefix(text) if text else _ZERO_KEY_HEX


def _http_error(status: int, message: str) -> HttpResponse:
    return HttpResponse(status, _TEXT, (message + "\n").encode("utf-8"))


class RegistrationService:
    """Answers key and registration requests from clients."""

    def __init__(
        self,
        store: _Store,
        private_key: PrivateKey,
        noise_private_key: PrivateKey,
        server_url: str,
        *,
        oidc_enabled: bool = False,
        registration_holdoff: float = REGISTRATION_HOLDOFF,
        registration_cache: _ExpiringCache | None = None,
    ) -> None:
        self.store = store
        self.private_key = private_key
        self.noise_private_key = noise_private_key
        self.server_url = server_url
        self.oidc_enabled = oidc_enabled
        self.registration_holdoff = registration_holdoff
        self.registration_cache = registration_cache or _ExpiringCache()
        self.registrations: Counter[tuple[str, str, str, str]] = Counter()

    # -- /key -------------------------------------------------------------

    def key_handler(self, version: str | None) -> HttpResponse:
        """Return the server's public keys for the client's capability version."""
        if version:
            if not _INTEGER.fullmatch(version):
                return HttpResponse(400, _TEXT, b"Wrong params")
            if int(version) >= NOISE_CAPABILITY_VERSION:
                payload = {
                    "LegacyPublicKey": format_machine_public_key(self.private_key.public_key),
                    "PublicKey": format_machine_public_key(self.noise_private_key.public_key),
                }
                body = (json.dumps(payload) + "\n").encode("utf-8")
                return HttpResponse(200, "application/json", body)
        legacy = machine_public_key_strip_prefix(self.private_key.public_key)
        return HttpResponse(200, _TEXT, legacy.encode("utf-8"))

    # -- entry points ------------------------------------------------------

    def register_legacy(self, machine_key_str: str, body: bytes) -> HttpResponse:
        """Handle a sealed registration request on /machine/<mkey>."""
        if not machine_key_str:
            return _http_error(400, "No machine ID in request")
        try:
            machine_key = parse_machine_public_key(
                machine_public_key_ensure_prefix(machine_key_str)
            )
        except ValueError:
            log.error("cannot parse machine key")
            self.registrations["unknown", "web", "error", "unknown"] += 1
            return _http_error(400, "Cannot parse machine key")
        try:
            request = RegisterRequest.from_json(decode(body, machine_key, self.private_key))
        except (CannotDecryptResponse, ValueError):
            log.error("cannot decode message")
            self.registrations["unknown", "web", "error", "unknown"] += 1
            return _http_error(400, "Cannot decode message")
        return self.handle_register(request, machine_key)

    def register_noise(self, method: str, body: bytes) -> HttpResponse:
        """Handle a plain JSON registration request carried over Noise."""
        if method != "POST":
            return _http_error(405, "Wrong method")
        try:
            request = RegisterRequest.from_json(body)
        except ValueError:
            log.error("cannot parse RegisterRequest")
            self.registrations["unknown", "web", "error", "unknown"] += 1
            return _http_error(500, "Internal error")
        return self.handle_register(request, None)

    # -- common logic ------------------------------------------------------

    def handle_register(
        self, register_request: RegisterRequest, machine_key: PublicKey | None
    ) -> HttpResponse:
        """Register, refresh, log out or re-authenticate a machine.

        ``machine_key`` is None for clients speaking Noise.
        """
        now = datetime.now(timezone.utc)
        node_key = _node_hex(register_request.node_key)
        try:
            machine = self.store.get_machine_by_any_node_key(
                register_request.node_key, register_request.old_node_key
            )
        except RecordNotFound:
            return self._handle_unknown_machine(register_request, machine_key, now)

        if machine.node_key == node_key:
            expiry = register_request.expiry
            if expiry is not None and expiry < now:
                return self._handle_logout(machine, machine_key)
            if not machine.is_expired():
                return self._handle_valid_registration(machine, machine_key)

        if machine.node_key == _node_hex(register_request.old_node_key) and not machine.is_expired():
            return self._handle_refresh_key(register_request, machine, machine_key)

        response = self._handle_expired(register_request, machine, machine_key)
        machine.expiry = None
        self.registration_cache.set(node_key, machine, REGISTER_CACHE_EXPIRATION)
        return response

    def _handle_unknown_machine(
        self,
        register_request: RegisterRequest,
        machine_key: PublicKey | None,
        now: datetime,
    ) -> HttpResponse:
        if register_request.auth_key:
            return self._handle_auth_key(register_request, machine_key)

        node_key = _node_hex(register_request.node_key)
        if register_request.followup and node_key in self.registration_cache:
            log.debug("machine %s is waiting for interactive login", register_request.hostinfo.hostname)
            time.sleep(self.registration_holdoff)
            return self._handle_new_machine(register_request, machine_key)

        hostname = register_request.hostinfo.hostname
        new_machine = Machine(
            machine_key=machine_public_key_strip_prefix(machine_key),
            hostname=hostname,
            given_name=self.store.generate_given_name(hostname),
            node_key=node_key,
            last_seen=now,
            expiry=register_request.expiry,
        )
        self.registration_cache.set(node_key, new_machine, REGISTER_CACHE_EXPIRATION)
        return self._handle_new_machine(register_request, machine_key)

    def _respond(
        self, resp: RegisterResponse, machine_key: PublicKey | None, status: int = 200
    ) -> HttpResponse:
        return HttpResponse(status, _JSON, marshal_response(resp, self.private_key, machine_key))

    def _auth_url(self, node_key: str) -> str:
        base = self.server_url.removesuffix("/")
        path = "oidc/register" if self.oidc_enabled else "register"
        return f"{base}/{path}/{_node_hex(node_key)}"

    def _handle_auth_key(
        self, register_request: RegisterRequest, machine_key: PublicKey | None
    ) -> HttpResponse:
        hostname = register_request.hostinfo.hostname
        try:
            pak = self.store.check_key_validity(register_request.auth_key)
        except Exception as err:
            log.error("failed authentication via auth key for %s: %s", hostname, err)
            invalid = getattr(err, "pre_auth_key", None)
            namespace = invalid.namespace.name if invalid is not None else "unknown"
            self.registrations["new", REGISTER_METHOD_AUTH_KEY, "error", namespace] += 1
            return self._respond(RegisterResponse(machine_authorized=False), machine_key, 401)

        namespace_name = pak.namespace.name
        node_key = _node_hex(register_request.node_key)
        try:
            machine: Machine | None = self.store.get_machine_by_any_node_key(
                register_request.node_key, register_request.old_node_key
            )
        except HeadscaleError:
            machine = None

        if machine is not None:
            machine.node_key = node_key
            machine.auth_key_id = pak.id
            self.store.refresh_machine(machine, register_request.expiry)
            acl_tags = list(pak.acl_tags)
            if acl_tags:
                self.store.set_tags(machine, acl_tags)
        else:
            to_register = Machine(
                hostname=hostname,
                given_name=self.store.generate_given_name(hostname),
                namespace_id=pak.namespace.id,
                namespace=pak.namespace,
                machine_key=machine_public_key_strip_prefix(machine_key),
                register_method=REGISTER_METHOD_AUTH_KEY,
                expiry=register_request.expiry,
                node_key=node_key,
                last_seen=datetime.now(timezone.utc),
                auth_key_id=pak.id,
                forced_tags=list(pak.acl_tags),
            )
            try:
                machine = self.store.register_machine(to_register)
            except Exception as err:
                log.error("could not register machine: %s", err)
                self.registrations["new", REGISTER_METHOD_AUTH_KEY, "error", namespace_name] += 1
                return _http_error(500, "Internal server error")

        try:
            self.store.use_pre_auth_key(pak)
        except Exception as err:
            log.error("failed to use pre-auth key: %s", err)
            self.registrations["new", REGISTER_METHOD_AUTH_KEY, "error", namespace_name] += 1
            return _http_error(500, "Internal server error")

        resp = RegisterResponse(machine_authorized=True, user=pak.namespace.to_user())
        response = self._respond(resp, machine_key)
        self.registrations["new", REGISTER_METHOD_AUTH_KEY, "success", namespace_name] += 1
        log.info(
            "successfully authenticated %s via auth key, ips %s",
            hostname,
            ", ".join(str(ip) for ip in machine.ip_addresses),
        )
        return response

    def _handle_new_machine(
        self, register_request: RegisterRequest, machine_key: PublicKey | None
    ) -> HttpResponse:
        resp = RegisterResponse(auth_url=self._auth_url(register_request.node_key))
        response = self._respond(resp, machine_key)
        log.info("sent auth url to %s", register_request.hostinfo.hostname)
        return response

    def _handle_logout(self, machine: Machine, machine_key: PublicKey | None) -> HttpResponse:
        log.info("client %s requested logout", machine.hostname)
        try:
            self.store.expire_machine(machine)
        except Exception as err:
            log.error("failed to expire machine: %s", err)
            return _http_error(500, "Internal server error")
        resp = RegisterResponse(
            auth_url="", machine_authorized=False, user=machine.namespace.to_user()
        )
        return self._respond(resp, machine_key)

    def _handle_valid_registration(
        self, machine: Machine, machine_key: PublicKey | None
    ) -> HttpResponse:
        resp = RegisterResponse(
            auth_url="",
            machine_authorized=True,
            user=machine.namespace.to_user(),
            login=machine.namespace.to_login(),
        )
        response = self._respond(resp, machine_key)
        self.registrations["update", "web", "success", machine.namespace.name] += 1
        log.info("machine %s successfully authorized", machine.hostname)
        return response

    def _handle_refresh_key(
        self,
        register_request: RegisterRequest,
        machine: Machine,
        machine_key: PublicKey | None,
    ) -> HttpResponse:
        machine.node_key = _node_hex(register_request.node_key)
        try:
            self.store.save(machine)
        except Exception as err:
            log.error("failed to update machine key in the database: %s", err)
            return _http_error(500, "Internal server error")
        resp = RegisterResponse(auth_url="", user=machine.namespace.to_user())
        response = self._respond(resp, machine_key)
        log.info("machine %s successfully refreshed", machine.hostname)
        return response

    def _handle_expired(
        self,
        register_request: RegisterRequest,
        machine: Machine,
        machine_key: PublicKey | None,
    ) -> HttpResponse:
        if register_request.auth_key:
            return self._handle_auth_key(register_request, machine_key)
        resp = RegisterResponse(auth_url=self._auth_url(register_request.node_key))
        response = self._respond(resp, machine_key)
        self.registrations["reauth", "web", "success", machine.namespace.name] += 1
        log.info("sent re-authentication url to %s", machine.hostname)
        return response