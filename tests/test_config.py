import pytest

from kasa_exporter.config import find_config_path, load_config_file, parse_config, parse_listen_address
from kasa_exporter.errors import ConfigError


def test_defaults():
    c = parse_config({})
    assert c.listen_address == "0.0.0.0:9233"
    assert c.poll_interval_seconds == 15.0
    assert c.unreachable_after_failures == 3
    assert c.stale_seconds == 300.0
    assert c.discovery_enabled
    assert c.devices == []


def test_yaml_file(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text(
        """
poll:
  interval_seconds: 5
  max_parallel: 2
  stale_seconds: 60
discovery:
  enabled: false
devices:
  - device_id: A
    address: 10.0.0.5
    alias: Heater
    schema: emeter_v1
""",
        encoding="utf-8",
    )

    c = parse_config(load_config_file(str(p)))

    assert c.poll_interval_seconds == 5.0
    assert c.max_parallel == 2
    assert not c.discovery_enabled
    assert len(c.devices) == 1
    d = c.devices[0]
    assert (d.device_id, d.alias, d.address, d.schema, d.source) == ("A", "Heater", "10.0.0.5:9999", "emeter_v1", "static")


def test_json_file(tmp_path):
    p = tmp_path / "config.json"
    p.write_text('{"web": {"telemetry_path": "/m"}}', encoding="utf-8")
    assert parse_config(load_config_file(str(p))).telemetry_path == "/m"


def test_empty_yaml_file_is_defaults(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config_file(str(p)) == {}


def test_non_mapping_root_rejected(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(str(p))


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(str(tmp_path / "nope.yaml"))


@pytest.mark.parametrize(
    "cfg",
    [
        {"devices": [{"address": "10.0.0.1"}]},
        {"devices": [{"device_id": "A", "address": "10.0.0.1", "schema": "bogus"}]},
        {"devices": "A"},
        {"poll": {"max_parallel": 0}},
        {"poll": {"interval_seconds": "soon"}},
        {"poll": []},
        {"discovery": {"enabled": False}},
        {"poll": {"stale_seconds": 0}},
        {"poll": {"stale_seconds": 0.5}},
        {"devices": [{"device_id": "A", "address": "10.0.0.1:70000"}]},
        {"devices": [{"device_id": "A", "address": "10.0.0.1:0"}]},
        {"devices": [{"device_id": "A", "address": ":9999"}]},
    ],
)
def test_invalid_config(cfg):
    with pytest.raises(ConfigError):
        parse_config(cfg)


def test_cloud_requires_credentials(monkeypatch):
    monkeypatch.delenv("KASA_CLOUD_USERNAME", raising=False)
    monkeypatch.delenv("KASA_CLOUD_PASSWORD", raising=False)
    with pytest.raises(ConfigError):
        parse_config({"cloud": {"enabled": True}})


def test_cloud_credentials_from_env(monkeypatch):
    monkeypatch.setenv("KASA_CLOUD_USERNAME", "me@example.com")
    monkeypatch.setenv("KASA_CLOUD_PASSWORD", "secret")
    c = parse_config({"cloud": {"enabled": True}})
    assert c.cloud_username == "me@example.com"
    assert c.cloud_password == "secret"


def test_parse_listen_address():
    assert parse_listen_address(":9233") == ("", 9233)
    assert parse_listen_address("127.0.0.1:8000") == ("127.0.0.1", 8000)
    assert parse_listen_address("9233") == ("", 9233)


def test_find_config_path_prefers_env(monkeypatch, tmp_path):
    monkeypatch.setenv("KASA_EXPORTER_CONFIG", "/etc/kasa.yaml")
    assert find_config_path() == "/etc/kasa.yaml"
    assert find_config_path("/explicit.yaml") == "/explicit.yaml"


def test_stale_seconds_at_minimum_is_accepted():
    assert parse_config({"poll": {"stale_seconds": 1}}).stale_seconds == 1.0
