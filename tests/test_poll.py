import asyncio
import json

import pytest
from nacl.public import PrivateKey

from meshcontrol.keys import machine_public_key_strip_prefix
from meshcontrol.models import Machine, MapRequest, Namespace, RecordNotFound
from meshcontrol.poll import PollService
from meshcontrol.wire import seal_to

MAP_DATA = b"map-data"


class FakeServer:
    def __init__(self, machine=None, client_key=None):
        self.machine = machine
        self.client_key = client_key
        self.updated = []
        self.touched = 0
        self.state_changes = 0
        self.map_calls = []
        self.auto_routes = []
        self.fail_update = False
        self.fail_map = False
        self.fail_acl = False

    def get_machine_by_machine_key(self, machine_key):
        if self.machine is None or bytes(machine_key) != bytes(self.client_key):
            raise RecordNotFound()
        return self.machine

    def get_machine_by_any_node_key(self, node_key, old_node_key):
        if self.machine is None:
            raise RecordNotFound()
        return self.machine

    def update_acl_rules(self):
        if self.fail_acl:
            raise RuntimeError("acl failure")

    def enable_auto_approved_routes(self, machine):
        self.auto_routes.append(machine)

    def update_machine(self, machine):
        if self.fail_update:
            raise RuntimeError("db failure")
        self.updated.append(machine)

    def set_last_state_change_to_now(self):
        self.state_changes += 1

    def get_map_response_data(self, map_request, machine, is_noise):
        if self.fail_map:
            raise RuntimeError("map failure")
        self.map_calls.append(is_noise)
        return MAP_DATA

    def get_map_keep_alive_response_data(self, map_request, machine, is_noise):
        return b"keepalive"

    def update_machine_from_database(self, machine):
        pass

    def touch_machine(self, machine):
        self.touched += 1

    def is_outdated(self, machine):
        return False


class FakeWriter:
    def __init__(self, close_after=None):
        self.status = None
        self.content_type = None
        self.writes = []
        self.flushes = 0
        self.closed = asyncio.Event()
        self.close_after = close_after

    def start(self, status, content_type):
        self.status = status
        self.content_type = content_type

    def write(self, data):
        self.writes.append(bytes(data))
        if self.close_after is not None and len(self.writes) >= self.close_after:
            self.closed.set()

    def flush(self):
        self.flushes += 1


def make_machine():
    return Machine(id=1, hostname="old", namespace=Namespace(id=1, name="ns"))


def make_service(server, **kwargs):
    return PollService(server, PrivateKey.generate(), update_check_interval=3600.0, **kwargs)


@pytest.mark.asyncio
async def test_read_only_request_answers_directly():
    machine = make_machine()
    server = FakeServer(machine)
    writer = FakeWriter()
    request = MapRequest.from_json(
        {"ReadOnly": True, "Hostinfo": {"Hostname": "laptop"}, "Endpoints": ["192.0.2.1:41641"]}
    )
    await make_service(server).handle_poll(machine, request, writer, True)
    assert writer.status == 200
    assert writer.content_type == "application/json; charset=utf-8"
    assert writer.writes == [MAP_DATA]
    assert machine.hostname == "laptop"
    assert machine.endpoints == []
    assert server.state_changes == 0
    assert server.map_calls == [True]


@pytest.mark.asyncio
async def test_disco_key_is_stored_without_prefix():
    machine = make_machine()
    server = FakeServer(machine)
    request = MapRequest.from_json({"ReadOnly": True, "DiscoKey": "discokey:" + "ab" * 32})
    await make_service(server).handle_poll(machine, request, FakeWriter(), False)
    assert machine.disco_key == "ab" * 32


@pytest.mark.asyncio
async def test_endpoint_update_without_peers():
    machine = make_machine()
    server = FakeServer(machine)
    writer = FakeWriter()
    service = make_service(server)
    request = MapRequest.from_json(
        {"OmitPeers": True, "Hostinfo": {"Hostname": "laptop"}, "Endpoints": ["192.0.2.1:41641"]}
    )
    await service.handle_poll(machine, request, writer, False)
    assert writer.status == 200
    assert writer.writes == [MAP_DATA]
    assert machine.endpoints == ["192.0.2.1:41641"]
    assert machine.last_seen is not None
    assert server.state_changes == 1
    assert service.updates_from_node["ns", "laptop", "endpoint-update"] == 1


@pytest.mark.asyncio
async def test_omit_peers_with_stream_is_rejected():
    machine = make_machine()
    writer = FakeWriter()
    request = MapRequest(omit_peers=True, stream=True)
    await make_service(FakeServer(machine)).handle_poll(machine, request, writer, False)
    assert writer.status == 400
    assert writer.writes == [b"\n"]


@pytest.mark.asyncio
async def test_failed_database_update_gives_server_error():
    machine = make_machine()
    server = FakeServer(machine)
    server.fail_update = True
    writer = FakeWriter()
    await make_service(server).handle_poll(machine, MapRequest(read_only=True), writer, False)
    assert writer.status == 500
    assert server.map_calls == []


@pytest.mark.asyncio
async def test_failed_map_generation_gives_server_error():
    machine = make_machine()
    server = FakeServer(machine)
    server.fail_map = True
    writer = FakeWriter()
    await make_service(server).handle_poll(machine, MapRequest(read_only=True), writer, False)
    assert writer.status == 500


@pytest.mark.asyncio
async def test_acl_failure_is_tolerated_and_routes_approved():
    machine = make_machine()
    server = FakeServer(machine)
    server.fail_acl = True
    writer = FakeWriter()
    service = make_service(server, acl_enabled=True)
    await service.handle_poll(machine, MapRequest(read_only=True), writer, False)
    assert server.auto_routes == [machine]
    assert writer.status == 200


@pytest.mark.asyncio
async def test_streaming_sends_initial_map_until_client_closes():
    machine = make_machine()
    server = FakeServer(machine)
    writer = FakeWriter(close_after=1)
    service = make_service(server)
    request = MapRequest(stream=True)
    await asyncio.wait_for(service.handle_poll(machine, request, writer, False), timeout=5)
    assert writer.writes == [MAP_DATA]
    assert server.touched >= 1
    assert server.state_changes == 1
    assert service.updates_from_node["ns", "", "full-update"] == 1
    assert service.active_streams == 0


@pytest.mark.asyncio
async def test_streaming_stops_on_shutdown():
    machine = make_machine()
    server = FakeServer(machine)
    shutdown = asyncio.Event()
    shutdown.set()
    writer = FakeWriter()
    service = make_service(server, shutdown=shutdown)
    await asyncio.wait_for(
        service.handle_poll(machine, MapRequest(stream=True), writer, False), timeout=5
    )
    assert service.active_streams == 0
    assert writer.writes == []


@pytest.mark.asyncio
async def test_legacy_without_key_is_rejected():
    writer = FakeWriter()
    await make_service(FakeServer()).poll_legacy("", b"", writer)
    assert writer.status == 400
    assert writer.writes == [b"No machine key in request\n"]


@pytest.mark.asyncio
async def test_legacy_with_bad_key_is_rejected():
    writer = FakeWriter()
    await make_service(FakeServer()).poll_legacy("not-hex", b"", writer)
    assert writer.status == 400
    assert writer.writes == [b"Cannot parse client key\n"]


@pytest.mark.asyncio
async def test_legacy_with_undecryptable_body_is_rejected():
    client = PrivateKey.generate()
    writer = FakeWriter()
    key_str = machine_public_key_strip_prefix(client.public_key)
    await make_service(FakeServer()).poll_legacy(key_str, b"garbage", writer)
    assert writer.status == 400
    assert writer.writes == [b"Cannot decode message\n"]


def _sealed_request(service, client, payload):
    return seal_to(client, service.private_key.public_key, json.dumps(payload).encode())


@pytest.mark.asyncio
async def test_legacy_unknown_machine_is_unauthorized():
    client = PrivateKey.generate()
    service = make_service(FakeServer())
    writer = FakeWriter()
    body = _sealed_request(service, client, {"ReadOnly": True})
    await service.poll_legacy(machine_public_key_strip_prefix(client.public_key), body, writer)
    assert writer.status == 401


@pytest.mark.asyncio
async def test_legacy_known_machine_gets_map():
    client = PrivateKey.generate()
    machine = make_machine()
    server = FakeServer(machine, client.public_key)
    service = make_service(server)
    writer = FakeWriter()
    body = _sealed_request(service, client, {"ReadOnly": True, "Hostinfo": {"Hostname": "laptop"}})
    await service.poll_legacy(machine_public_key_strip_prefix(client.public_key), body, writer)
    assert writer.status == 200
    assert writer.writes == [MAP_DATA]
    assert server.map_calls == [False]
    assert machine.hostname == "laptop"


@pytest.mark.asyncio
async def test_noise_with_bad_json_is_server_error():
    writer = FakeWriter()
    await make_service(FakeServer()).poll_noise(b"{not json", writer)
    assert writer.status == 500
    assert writer.writes == [b"Internal error\n"]


@pytest.mark.asyncio
async def test_noise_unknown_machine_is_not_found():
    writer = FakeWriter()
    await make_service(FakeServer()).poll_noise(b'{"ReadOnly": true}', writer)
    assert writer.status == 404
    assert writer.writes == [b"Internal error\n"]


@pytest.mark.asyncio
async def test_noise_known_machine_gets_map():
    machine = make_machine()
    server = FakeServer(machine)
    writer = FakeWriter()
    await make_service(server).poll_noise(b'{"ReadOnly": true}', writer)
    assert writer.status == 200
    assert writer.writes == [MAP_DATA]
    assert server.map_calls == [True]