import time
from datetime import datetime, timezone

import pytest

from kasa_recorder.errors import MalformedResponse
from kasa_recorder.metrics import (
    POWER,
    STATUS,
    DeviceIdentity,
    MetricPoint,
    device_time_to_epoch,
    extract,
    has_emeter,
    response_timestamp,
)

TS = 1682935200
IDENT = DeviceIdentity(alias="fallback")


def sysinfo(**kw):
    return {"system": {"get_sysinfo": dict(kw)}}


def test_single_relay_yields_one_status_point() -> None:
    points = extract(sysinfo(alias="Lamp", relay_state=1), IDENT, TS)
    assert points == [MetricPoint(STATUS, 1, {"alias": "Lamp"}, TS)]


def test_multi_outlet_yields_status_per_child_and_no_power() -> None:
    resp = sysinfo(
        alias="Strip",
        feature="TIM:ENE",
        children=[{"id": "00", "alias": "A", "state": 1}, {"id": "01", "alias": "B", "state": 0}],
    )
    resp["emeter"] = {"get_realtime": {"err_code": 0, "power": 40.0}}

    points = extract(resp, IDENT, TS)

    assert [(p.series, p.alias, p.value) for p in points] == [(STATUS, "A", 1), (STATUS, "B", 0)]
    assert not any(p.series == POWER for p in points)


def test_metered_device_yields_power() -> None:
    resp = sysinfo(alias="Plug", relay_state=1, feature="TIM:ENE")
    resp["emeter"] = {"get_realtime": {"err_code": 0, "power": 12.5}}

    points = extract(resp, IDENT, TS)

    assert [p.series for p in points] == [STATUS, POWER]
    assert points[1].value == 12.5
    assert isinstance(points[1].value, float)
    assert points[1].tags == {"alias": "Plug"}


def test_emeter_error_suppresses_power() -> None:
    resp = sysinfo(alias="Plug", relay_state=1, feature="ENE")
    resp["emeter"] = {"get_realtime": {"err_code": 1, "power": 12.5}}
    assert [p.series for p in extract(resp, IDENT, TS)] == [STATUS]


def test_emeter_without_err_code_suppresses_power() -> None:
    resp = sysinfo(alias="Plug", relay_state=0)
    resp["emeter"] = {"err_code": -1, "err_msg": "module not support"}
    assert [p.series for p in extract(resp, IDENT, TS)] == [STATUS]


def test_power_in_milliwatts() -> None:
    resp = sysinfo(alias="Plug", relay_state=1)
    resp["emeter"] = {"get_realtime": {"err_code": 0, "power_mw": 2500}}
    assert extract(resp, IDENT, TS)[1].value == 2.5


def test_alias_falls_back_to_identity() -> None:
    points = extract(sysinfo(alias="", relay_state=0), IDENT, TS)
    assert points[0].alias == "fallback"


def test_child_alias_falls_back_to_id() -> None:
    points = extract(sysinfo(children=[{"id": "8006AB01", "alias": "", "state": 1}]), IDENT, TS)
    assert points[0].alias == "8006AB01"


def test_state_is_normalised_to_int() -> None:
    assert extract(sysinfo(alias="Lamp", relay_state=True), IDENT, TS)[0].value == 1
    assert extract(sysinfo(alias="Lamp", relay_state="off"), IDENT, TS)[0].value == 0


@pytest.mark.parametrize(
    "resp",
    [
        {},
        {"system": {"get_sysinfo": {"err_code": -1}}},
        sysinfo(alias="Lamp"),
        sysinfo(alias="Lamp", relay_state=7),
        sysinfo(children=[{"alias": "A"}]),
        sysinfo(children=["A"]),
        sysinfo(children={"A": 1}),
        sysinfo(alias="Lamp", relay_state=1.0),
        sysinfo(alias="Lamp", relay_state="yes"),
    ],
)
def test_malformed_responses(resp) -> None:
    with pytest.raises(MalformedResponse):
        extract(resp, IDENT, TS)


def test_points_are_immutable() -> None:
    p = MetricPoint(STATUS, 1, {"alias": "Lamp"}, TS)
    with pytest.raises(AttributeError):
        p.value = 0
    with pytest.raises(TypeError):
        p.tags["alias"] = "x"


def test_point_rejects_empty_alias_and_unknown_series() -> None:
    with pytest.raises(ValueError):
        MetricPoint(STATUS, 1, {"alias": " "}, TS)
    with pytest.raises(ValueError):
        MetricPoint("voltage", 1.0, {"alias": "Lamp"}, TS)


def test_as_dict_sink_shape() -> None:
    p = MetricPoint(POWER, 3.5, {"alias": "Lamp"}, TS)
    assert p.as_dict() == {"series": "power", "values": {"value": 3.5}, "tags": {"alias": "Lamp"}, "timestamp": TS}


def test_device_time_to_epoch_utc() -> None:
    t = {"year": 2023, "month": 5, "mday": 1, "hour": 10, "min": 0, "sec": 0}
    assert device_time_to_epoch(t, timezone.utc) == 1682935200


def test_device_time_to_epoch_local() -> None:
    t = {"year": 2023, "month": 5, "mday": 1, "hour": 10, "min": 0, "sec": 0}
    assert device_time_to_epoch(t) == int(time.mktime((2023, 5, 1, 10, 0, 0, 0, 0, -1)))
    assert device_time_to_epoch(t) == int(datetime(2023, 5, 1, 10, 0, 0).timestamp())


def test_response_timestamp_prefers_device_clock() -> None:
    resp = {"time": {"get_time": {"err_code": 0, "year": 2023, "month": 5, "mday": 1, "hour": 10, "min": 0, "sec": 0}}}
    assert response_timestamp(resp, 5.0, timezone.utc) == 1682935200


@pytest.mark.parametrize(
    "resp",
    [
        {},
        {"time": {"get_time": {"err_code": -1}}},
        {"time": {"get_time": {"year": 2023}}},
        {"time": {"get_time": {"year": 2023, "month": 13, "mday": 1, "hour": 0, "min": 0, "sec": 0}}},
    ],
)
def test_response_timestamp_falls_back(resp) -> None:
    assert response_timestamp(resp, 1234.9) == 1234


def test_has_emeter() -> None:
    assert has_emeter({"feature": "TIM:ENE"})
    assert not has_emeter({"feature": "TIM"})
    assert not has_emeter({})


def test_strip_without_outlets_yields_nothing() -> None:
    resp = sysinfo(alias="Strip", relay_state=1, children=[])
    resp["emeter"] = {"get_realtime": {"err_code": 0, "power": 5.0}}
    assert extract(resp, IDENT, TS) == []


def test_state_accepts_on_off_strings() -> None:
    assert extract(sysinfo(alias="Lamp", relay_state=" ON "), IDENT, TS)[0].value == 1
    points = extract(sysinfo(children=[{"alias": "A", "state": "1"}, {"alias": "B", "state": False}]), IDENT, TS)
    assert [p.value for p in points] == [1, 0]
