from __future__ import annotations

import logging
import types
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import MalformedResponse

STATUS = "status"
POWER = "power"
SERIES = (STATUS, POWER)

FEATURE_ENERGY_METER = "ENE"

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceIdentity:
    """Where a device lives and what it is called.

    ``id`` is set only when addressing one outlet of a strip; cloud queries
    then carry it as the child context. ``device_id`` is the cloud device id.
    """

    alias: str
    id: Optional[str] = None
    device_id: str = ""
    address: str = ""


@dataclass(frozen=True)
class MetricPoint:
    series: str
    value: Union[int, float]
    tags: Mapping[str, str] = field(default_factory=dict)
    timestamp: int = 0

    def __post_init__(self) -> None:
        if self.series not in SERIES:
            raise ValueError(f"unknown series {self.series!r}")
        if not str(self.tags.get("alias", "")).strip():
            raise ValueError("metric point needs a non-empty alias tag")
        object.__setattr__(self, "tags", types.MappingProxyType(dict(self.tags)))

    @property
    def alias(self) -> str:
        return self.tags["alias"]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "series": self.series,
            "values": {"value": self.value},
            "tags": dict(self.tags),
            "timestamp": self.timestamp,
        }


def device_time_to_epoch(t: Mapping[str, Any], tz: Optional[tzinfo] = None) -> int:
    dt = datetime(
        int(t["year"]),
        int(t["month"]),
        int(t["mday"]),
        int(t["hour"]),
        int(t["min"]),
        int(t["sec"]),
        tzinfo=tz,
    )
    return int(dt.timestamp())


def response_timestamp(response: Mapping[str, Any], fallback: float, tz: Optional[tzinfo] = None) -> int:
    """Device clock from a ``time.get_time`` result, or ``fallback`` when it is missing or unusable."""
    t = _result(response, "time", "get_time")
    if t is None or t.get("err_code", 0) != 0:
        return int(fallback)
    try:
        return device_time_to_epoch(t, tz)
    except (KeyError, TypeError, ValueError, OverflowError) as e:
        log.warning("unusable device time %s: %s", t, e)
        return int(fallback)


def _result(response: Mapping[str, Any], group: str, cmd: str) -> Optional[Dict[str, Any]]:
    g = response.get(group)
    if not isinstance(g, dict):
        return None
    r = g.get(cmd)
    if not isinstance(r, dict):
        return None
    return r


def _parse_state(x: Any) -> Optional[int]:
    # firmware reports 0/1; some cloud relays hand back "on"/"off"
    if isinstance(x, bool) or (isinstance(x, int) and x in (0, 1)):
        return int(x)
    if isinstance(x, str):
        return {"0": 0, "1": 1, "off": 0, "on": 1}.get(x.strip().lower())
    return None


def has_emeter(sysinfo: Mapping[str, Any]) -> bool:
    feature = sysinfo.get("feature")
    if not isinstance(feature, str):
        return False
    return FEATURE_ENERGY_METER in feature.split(":")


def sysinfo_of(response: Mapping[str, Any]) -> Dict[str, Any]:
    sysinfo = _result(response, "system", "get_sysinfo")
    if sysinfo is None:
        raise MalformedResponse("response has no system.get_sysinfo result")
    if sysinfo.get("err_code", 0) != 0:
        raise MalformedResponse(f"get_sysinfo failed with err_code {sysinfo.get('err_code')}")
    return sysinfo


def _power_of(realtime: Mapping[str, Any]) -> Optional[float]:
    try:
        if realtime.get("power") is not None:
            return float(realtime["power"])
        if realtime.get("power_mw") is not None:
            return float(realtime["power_mw"]) / 1000.0
    except (TypeError, ValueError) as e:
        raise MalformedResponse(f"unusable emeter reading {realtime}") from e
    return None


def extract(response: Mapping[str, Any], identity: DeviceIdentity, timestamp: float) -> List[MetricPoint]:
    """Turn one device response into status and power points.

    A strip (sysinfo with ``children``) yields one status point per outlet
    and no power point, even when the parent meters energy. A single relay
    yields its status and, when ``emeter.get_realtime`` came back with
    ``err_code`` 0, its power.
    """
    sysinfo = sysinfo_of(response)
    ts = int(timestamp)
    points: List[MetricPoint] = []

    children = sysinfo.get("children")
    if children is not None:
        if not isinstance(children, list):
            raise MalformedResponse(f"unexpected children {children!r}")
        for child in children:
            if not isinstance(child, dict):
                raise MalformedResponse(f"unexpected child entry {child!r}")
            name = str(child.get("alias") or child.get("id") or "").strip()
            if not name:
                raise MalformedResponse("child outlet without alias or id")
            state = _parse_state(child.get("state"))
            if state is None:
                raise MalformedResponse(f"child '{name}' has no usable state")
            points.append(MetricPoint(STATUS, state, {"alias": name}, ts))
        return points

    name = str(
        sysinfo.get("alias") or identity.alias or sysinfo.get("deviceId") or sysinfo.get("mac") or ""
    ).strip()
    if not name:
        raise MalformedResponse("device without alias")
    state = _parse_state(sysinfo.get("relay_state"))
    if state is None:
        raise MalformedResponse(f"device '{name}' has no usable relay_state")
    points.append(MetricPoint(STATUS, state, {"alias": name}, ts))

    realtime = _result(response, "emeter", "get_realtime")
    if realtime is not None and realtime.get("err_code") == 0:
        power = _power_of(realtime)
        if power is not None:
            points.append(MetricPoint(POWER, power, {"alias": name}, ts))

    return points
