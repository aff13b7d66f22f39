import json
from datetime import datetime, timedelta, timezone

import pytest

from meshcontrol.keys import HeadscaleError
from meshcontrol.models import (
    ZERO_TIME_TEXT,
    Machine,
    MapRequest,
    Namespace,
    RecordNotFound,
    RegisterRequest,
    RegisterResponse,
    format_time,
    parse_time,
)

NODE_KEY = "nodekey:" + "ab" * 32
OLD_NODE_KEY = "nodekey:" + "cd" * 32


def test_machine_without_expiry_is_not_expired():
    assert Machine().is_expired() is False


def test_machine_with_past_expiry_is_expired():
    machine = Machine(expiry=datetime.now(timezone.utc) - timedelta(hours=1))
    assert machine.is_expired() is True


def test_machine_with_future_expiry_is_not_expired():
    machine = Machine(expiry=datetime.now(timezone.utc) + timedelta(hours=1))
    assert machine.is_expired() is False


def test_namespace_user_and_login_carry_name_and_id():
    namespace = Namespace(id=7, name="test")
    user = namespace.to_user()
    login = namespace.to_login()
    assert user["ID"] == 7
    assert user["LoginName"] == "test"
    assert user["DisplayName"] == "test"
    assert login["ID"] == 7
    assert login["LoginName"] == "test"
    assert login["Domain"] == user["Domain"]


def test_register_request_from_json():
    expiry = datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)
    payload = {
        "Version": 39,
        "NodeKey": NODE_KEY,
        "OldNodeKey": OLD_NODE_KEY,
        "Auth": {"AuthKey": "placeholder"},
        "Expiry": format_time(expiry),
        "Followup": "",
        "Hostinfo": {"Hostname": "laptop", "RoutableIPs": ["10.0.0.0/24"]},
    }
    request = RegisterRequest.from_json(json.dumps(payload).encode())
    assert request.version == 39
    assert request.node_key == NODE_KEY
    assert request.old_node_key == OLD_NODE_KEY
    assert request.auth_key == "placeholder"
    assert request.expiry == expiry
    assert request.hostinfo.hostname == "laptop"
    assert [str(r) for r in request.hostinfo.routable_ips] == ["10.0.0.0/24"]


def test_register_request_zero_expiry_is_none():
    request = RegisterRequest.from_json({"NodeKey": NODE_KEY, "Expiry": ZERO_TIME_TEXT})
    assert request.expiry is None
    assert request.auth_key == ""


def test_register_request_rejects_bad_json():
    with pytest.raises(ValueError):
        RegisterRequest.from_json(b"{not json")


def test_register_request_rejects_non_object():
    with pytest.raises(ValueError):
        RegisterRequest.from_json("[1, 2]")


def test_register_response_to_json_fields():
    namespace = Namespace(id=3, name="ns")
    response = RegisterResponse(
        user=namespace.to_user(), machine_authorized=True, auth_url="x/register/y"
    )
    data = response.to_json()
    assert data["MachineAuthorized"] is True
    assert data["AuthURL"] == "x/register/y"
    assert data["User"] == namespace.to_user()
    assert data["NodeKeyExpired"] is False
    assert json.loads(json.dumps(data)) == data


def test_default_register_response_has_empty_user():
    data = RegisterResponse().to_json()
    assert data["User"]["LoginName"] == ""
    assert data["MachineAuthorized"] is False
    assert data["AuthURL"] == ""


def test_map_request_from_json():
    payload = {
        "Version": 40,
        "Compress": "zstd",
        "NodeKey": NODE_KEY,
        "DiscoKey": "discokey:" + "ef" * 32,
        "Endpoints": ["192.0.2.1:41641"],
        "Hostinfo": {"Hostname": "server"},
        "OmitPeers": True,
        "Stream": False,
        "ReadOnly": True,
    }
    request = MapRequest.from_json(json.dumps(payload))
    assert request.compress == "zstd"
    assert request.node_key == NODE_KEY
    assert request.endpoints == ["192.0.2.1:41641"]
    assert request.hostinfo.hostname == "server"
    assert request.omit_peers is True
    assert request.stream is False
    assert request.read_only is True


def test_map_request_defaults():
    request = MapRequest.from_json("{}")
    assert request.endpoints == []
    assert request.read_only is False
    assert request.hostinfo.routable_ips == []


def test_time_round_trip():
    moment = datetime(2024, 2, 3, 4, 5, 6, 250000, tzinfo=timezone.utc)
    assert parse_time(format_time(moment)) == moment


def test_zero_time_round_trip():
    assert format_time(None) == ZERO_TIME_TEXT
    assert parse_time(ZERO_TIME_TEXT) is None


def test_parse_time_rejects_garbage():
    with pytest.raises(ValueError):
        parse_time("yesterday")


def test_record_not_found_message_and_kind():
    error = RecordNotFound()
    assert isinstance(error, HeadscaleError)
    assert "record not found" in str(error)