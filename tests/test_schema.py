import pytest

from kasa_exporter.errors import SchemaError
from kasa_exporter.schema import DEFAULT_SCHEMA, resolve_schema, to_reading


@pytest.mark.parametrize(
    "model,hw_ver,expected",
    [
        ("HS110(EU)", "1.0", "emeter_v1"),
        ("HS110(US)", "2.0", "emeter_v2"),
        ("KP115(UK)", "1.0", "emeter_v2"),
        ("hs110(eu)", "1.1", "emeter_v1"),
        ("HS110(EU)", "", "emeter_v2"),
        ("Unknown", "9.0", DEFAULT_SCHEMA),
    ],
)
def test_resolve_schema(model, hw_ver, expected):
    assert resolve_schema(model, hw_ver) == expected


def test_v1_reading_uses_base_units_and_kwh():
    r = to_reading({"current": 0.25, "voltage": 123.1, "power": 30.0, "total": 0.5}, "emeter_v1", 42.0)
    assert r.current_amperes == 0.25
    assert r.voltage_volts == 123.1
    assert r.power_watts == 30.0
    assert r.energy_joules_total == pytest.approx(1_800_000.0)
    assert r.observed_at == 42.0


def test_v2_reading_scales_milli_units_and_wh():
    r = to_reading({"current_ma": 250, "voltage_mv": 123100, "power_mw": 30000, "total_wh": 2}, "emeter_v2", 1.0)
    assert r.current_amperes == pytest.approx(0.25)
    assert r.voltage_volts == pytest.approx(123.1)
    assert r.power_watts == pytest.approx(30.0)
    assert r.energy_joules_total == pytest.approx(7200.0)


def test_missing_field_is_schema_error():
    with pytest.raises(SchemaError):
        to_reading({"current_ma": 250, "voltage_mv": 123100, "power_mw": 30000}, "emeter_v2", 1.0)


def test_non_numeric_field_is_schema_error():
    with pytest.raises(SchemaError):
        to_reading({"current": "x", "voltage": 1, "power": 1, "total": 1}, "emeter_v1", 1.0)


def test_unknown_tag_is_schema_error():
    with pytest.raises(SchemaError):
        to_reading({}, "emeter_v9", 1.0)
