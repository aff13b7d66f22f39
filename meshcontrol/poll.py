"""Map polling over the legacy and Noise control protocols."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Protocol

from nacl.public import PrivateKey, PublicKey

from .keys import (
    CannotDecryptResponse,
    decode,
    disco_public_key_strip_prefix,
    machine_public_key_ensure_prefix,
    parse_machine_public_key,
)
from .models import Machine, MapRequest, RecordNotFound
from .stream import KEEP_ALIVE_INTERVAL, PollStream
from .swagger import HttpResponse

log = logging.getLogger(__name__)

_JSON = "application/json; charset=utf-8"
_TEXT = "text/plain; charset=utf-8"


class _Server(Protocol):
    def get_machine_by_machine_key(self, machine_key: PublicKey) -> Machine: ...

    def get_machine_by_any_node_key(self, node_key: str, old_node_key: str) -> Machine: ...

    def update_acl_rules(self) -> None: ...

    def enable_auto_approved_routes(self, machine: Machine) -> None: ...

    def update_machine(self, machine: Machine) -> None: ...

    def set_last_state_change_to_now(self) -> None: ...

    def get_map_response_data(
        self, map_request: MapRequest, machine: Machine, is_noise: bool
    ) -> bytes: ...

    def get_map_keep_alive_response_data(
        self, map_request: MapRequest, machine: Machine, is_noise: bool
    ) -> bytes: ...

    def update_machine_from_database(self, machine: Machine) -> None: ...

    def touch_machine(self, machine: Machine) -> None: ...

    def is_outdated(self, machine: Machine) -> bool: ...


class _Writer(Protocol):
    """A response being sent to a client.

    ``start`` sends the status line and content type; writing without
    starting first implies status 200.  A writer may offer ``flush`` and a
    ``closed`` asyncio event set when the client goes away.
    """

    def start(self, status: int, content_type: str) -> Any: ...

    def write(self, data: bytes) -> Any: ...


def _http_error(status: int, message: str) -> HttpResponse:
    return HttpResponse(status, _TEXT, (message + "\n").encode("utf-8"))


def _send(writer: _Writer, response: HttpResponse) -> None:
    writer.start(response.status, response.content_type)
    try:
        writer.write(response.body)
    except OSError as err:
        log.error("failed to write response: %s", err)
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()


class PollService:
    """Serves map requests and keeps long-poll streams open for clients."""

    def __init__(
        self,
        server: _Server,
        private_key: PrivateKey,
        *,
        update_check_interval: float,
        keep_alive_interval: float = KEEP_ALIVE_INTERVAL,
        acl_enabled: bool = False,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self.server = server
        self.private_key = private_key
        self.update_check_interval = update_check_interval
        self.keep_alive_interval = keep_alive_interval
        self.acl_enabled = acl_enabled
        self.shutdown = shutdown
        self.updates_from_node: Counter[tuple[str, str, str]] = Counter()
        self.updates_received: Counter[tuple[str, str]] = Counter()
        self.updates_sent: Counter[tuple[str, str, str]] = Counter()
        self.last_state_update: dict[tuple[str, str], float] = {}
        self.active_streams = 0

    async def poll_legacy(self, machine_key_str: str, body: bytes, writer: _Writer) -> None:
        """Handle a sealed map request on /machine/<mkey>/map."""
        if not machine_key_str:
            log.error("no machine key in request")
            _send(writer, _http_error(400, "No machine key in request"))
            return
        try:
            machine_key = parse_machine_public_key(
                machine_public_key_ensure_prefix(machine_key_str)
            )
        except ValueError as err:
            log.error("cannot parse client key: %s", err)
            _send(writer, _http_error(400, "Cannot parse client key"))
            return
        try:
            map_request = MapRequest.from_json(decode(body, machine_key, self.private_key))
        except (CannotDecryptResponse, ValueError, TypeError) as err:
            log.error("cannot decode message: %s", err)
            _send(writer, _http_error(400, "Cannot decode message"))
            return

        try:
            machine = self.server.get_machine_by_machine_key(machine_key)
        except RecordNotFound:
            log.warning("ignoring request, cannot find machine with key %s", machine_key_str)
            _send(writer, _http_error(401, ""))
            return
        except Exception as err:
            log.error("failed to fetch machine with key %s: %s", machine_key_str, err)
            _send(writer, _http_error(500, ""))
            return

        log.debug("machine %s is entering polling via the legacy protocol", machine.hostname)
        await self.handle_poll(machine, map_request, writer, False)

    async def poll_noise(self, body: bytes, writer: _Writer) -> None:
        """Handle a plain JSON map request carried over Noise."""
        try:
            map_request = MapRequest.from_json(body)
        except (ValueError, TypeError) as err:
            log.error("cannot parse MapRequest: %s", err)
            _send(writer, _http_error(500, "Internal error"))
            return

        try:
            machine = self.server.get_machine_by_any_node_key(map_request.node_key, "")
        except RecordNotFound:
            log.warning("ignoring request, cannot find machine with key %s", map_request.node_key)
            _send(writer, _http_error(404, "Internal error"))
            return
        except Exception as err:
            log.error("failed to fetch machine with node key %s: %s", map_request.node_key, err)
            _send(writer, _http_error(500, "Internal error"))
            return

        log.debug("machine %s is entering polling via the Noise protocol", machine.hostname)
        await self.handle_poll(machine, map_request, writer, True)

    async def handle_poll(
        self,
        machine: Machine,
        map_request: MapRequest,
        writer: _Writer,
        is_noise: bool,
    ) -> None:
        """Record what the client reported, answer it and stream updates if asked."""
        machine.hostname = map_request.hostinfo.hostname
        machine.host_info = map_request.hostinfo
        machine.disco_key = disco_public_key_strip_prefix(map_request.disco_key or None)
        now = datetime.now(timezone.utc)

        if self.acl_enabled:
            try:
                self.server.update_acl_rules()
            except Exception as err:
                log.error("failed to update ACL rules for %s: %s", machine.hostname, err)
            self.server.enable_auto_approved_routes(machine)

        # A read-only request only fetches the map; it must not touch endpoints.
        if not map_request.read_only:
            machine.endpoints = list(map_request.endpoints)
            machine.last_seen = now

        try:
            self.server.update_machine(machine)
        except Exception as err:
            log.error("failed to persist machine %s: %s", machine.hostname, err)
            _send(writer, _http_error(500, ""))
            return

        try:
            map_resp = self.server.get_map_response_data(map_request, machine, is_noise)
        except Exception as err:
            log.error("failed to get map response for %s: %s", machine.hostname, err)
            _send(writer, _http_error(500, ""))
            return

        labels = (machine.namespace.name, machine.hostname)

        if map_request.read_only:
            log.info("client %s is starting up, probably after a DERP map", machine.hostname)
            _send(writer, HttpResponse(200, _JSON, map_resp))
            return

        self.server.set_last_state_change_to_now()

        if map_request.omit_peers and not map_request.stream:
            log.info("client %s sent an endpoint update", machine.hostname)
            _send(writer, HttpResponse(200, _JSON, map_resp))
            self.updates_from_node[(*labels, "endpoint-update")] += 1
            return
        if map_request.omit_peers and map_request.stream:
            log.warning("ignoring request from %s, don't know how to handle it", machine.hostname)
            _send(writer, _http_error(400, ""))
            return

        closed = getattr(writer, "closed", None)
        stream = PollStream(
            self.server,
            machine,
            map_request,
            writer,
            update_check_interval=self.update_check_interval,
            keep_alive_interval=self.keep_alive_interval,
            is_noise=is_noise,
            shutdown=self.shutdown,
            closed=closed if isinstance(closed, asyncio.Event) else None,
            updates_from_node=self.updates_from_node,
            updates_received=self.updates_received,
            updates_sent=self.updates_sent,
            last_state_update=self.last_state_update,
        )
        log.info("client %s is ready to access the tailnet, sending initial map", machine.hostname)
        stream.poll_data.put_nowait(map_resp)
        self.updates_from_node[(*labels, "full-update")] += 1
        stream.updates.put_nowait(None)

        self.active_streams += 1
        try:
            await stream.run()
        finally:
            self.active_streams -= 1
        log.debug("finished stream, closing poll session for %s", machine.hostname)