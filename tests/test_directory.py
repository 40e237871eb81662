from unittest.mock import MagicMock

import pytest
import requests

from kasa_exporter.directory import CloudDirectory, StaticDirectory
from kasa_exporter.errors import DirectoryError
from kasa_exporter.models import DeviceCandidate


def response(body):
    r = MagicMock()
    r.json.return_value = body
    r.raise_for_status.return_value = None
    return r


LOGIN_OK = {"error_code": 0, "result": {"accountId": "1", "email": "me@example.com", "token": "t1"}}
DEVICE_LIST = {
    "error_code": 0,
    "result": {
        "deviceList": [
            {"deviceId": "A", "alias": "Kettle", "deviceModel": "HS110(EU)", "deviceHwVer": "1.0", "status": 1},
            {"alias": "broken entry"},
        ]
    },
}


def make_directory(*bodies):
    session = MagicMock()
    session.post.side_effect = [response(b) for b in bodies]
    return CloudDirectory("me@example.com", "secret", session=session), session


def test_static_directory_returns_copies():
    c = DeviceCandidate("A", address="10.0.0.1:9999")
    d = StaticDirectory([c])
    out = d.fetch()
    out.clear()
    assert d.fetch() == [c]


def test_cloud_login_then_device_list():
    d, session = make_directory(LOGIN_OK, DEVICE_LIST)

    out = d.fetch()

    assert out == [DeviceCandidate("A", "Kettle", None, "HS110(EU)", "1.0", None, "cloud")]
    login_call, list_call = session.post.call_args_list
    assert login_call.kwargs["json"]["method"] == "login"
    assert login_call.kwargs["json"]["params"]["cloudUserName"] == "me@example.com"
    assert list_call.kwargs["json"]["method"] == "getDeviceList"
    assert list_call.kwargs["params"] == {"token": "t1"}


def test_cloud_relogin_on_expired_token():
    expired = {"error_code": -20651, "msg": "Token expired"}
    d, session = make_directory(LOGIN_OK, DEVICE_LIST, expired, {"error_code": 0, "result": {"token": "t2"}}, DEVICE_LIST)

    d.fetch()
    out = d.fetch()

    assert [c.device_id for c in out] == ["A"]
    assert d.token == "t2"
    assert session.post.call_count == 5


def test_cloud_login_rejected():
    d, _ = make_directory({"error_code": -20601, "msg": "Incorrect email or password"})
    with pytest.raises(DirectoryError):
        d.fetch()


def test_cloud_network_error_is_directory_error():
    session = MagicMock()
    session.post.side_effect = requests.exceptions.ConnectionError("no route")
    d = CloudDirectory("me@example.com", "secret", session=session)
    with pytest.raises(DirectoryError):
        d.fetch()


def test_cloud_list_error_is_directory_error():
    d, _ = make_directory(LOGIN_OK, {"error_code": -1, "msg": "server busy"})
    with pytest.raises(DirectoryError):
        d.fetch()
