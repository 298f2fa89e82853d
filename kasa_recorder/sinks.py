from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

import requests
from prometheus_client import CollectorRegistry, push_to_gateway, write_to_textfile
from prometheus_client.core import GaugeMetricFamily

from .errors import SinkError
from .metrics import POWER, STATUS, MetricPoint

log = logging.getLogger(__name__)


class Sink:
    def begin_run(self) -> None:
        pass

    def end_run(self) -> None:
        pass

    def write_points(self, points: Sequence[MetricPoint]) -> None:
        raise NotImplementedError

    def write_point(self, point: MetricPoint) -> None:
        self.write_points([point])


def _escape_key(s: str) -> str:
    return s.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(s: str) -> str:
    return s.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def _field_value(v: object) -> str:
    if isinstance(v, bool):
        return f"{int(v)}i"
    if isinstance(v, int):
        return f"{v}i"
    return repr(float(v))


def to_line(point: MetricPoint) -> str:
    tags = ",".join(f"{_escape_key(k)}={_escape_key(str(v))}" for k, v in sorted(point.tags.items()))
    head = _escape_measurement(point.series)
    if tags:
        head = f"{head},{tags}"
    return f"{head} value={_field_value(point.value)} {int(point.timestamp)}"


class InfluxSink(Sink):
    """InfluxDB 1.x ``/write`` endpoint, line protocol with second precision."""

    def __init__(
        self,
        url: str = "http://localhost:8086",
        database: str = "kasa",
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout_seconds: float = 5.0,
        http: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.database = database
        self.auth = (username, password) if username else None
        self.timeout_seconds = float(timeout_seconds)
        self.http = http or requests.Session()
        self.log = logger or log

    def write_points(self, points: Sequence[MetricPoint]) -> None:
        if not points:
            return
        body = "\n".join(to_line(p) for p in points) + "\n"
        try:
            resp = self.http.post(
                f"{self.url}/write",
                params={"db": self.database, "precision": "s"},
                data=body.encode("utf-8"),
                auth=self.auth,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise SinkError(f"influxdb write failed: {e}") from e
        if resp.status_code >= 300:
            raise SinkError(f"influxdb write failed: {resp.status_code} {resp.text[:200]}")
        self.log.info("wrote %d points to %s/%s", len(points), self.url, self.database)


class _PointsCollector:
    def __init__(self, points: Iterable[MetricPoint]) -> None:
        self.points = list(points)

    def collect(self):
        status = GaugeMetricFamily("kasa_status", "Relay state (1 on, 0 off).", labels=["alias"])
        power = GaugeMetricFamily("kasa_power", "Instantaneous power in watts.", labels=["alias"])
        for p in self.points:
            if p.series == STATUS:
                status.add_metric([p.alias], float(p.value))
            elif p.series == POWER:
                power.add_metric([p.alias], float(p.value))
        yield status
        yield power


def registry_for(points: Sequence[MetricPoint]) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(_PointsCollector(points))
    return registry


class _RegistrySink(Sink):
    """Exposes the latest point per (series, alias) seen in the current run.

    Each publish replaces the whole exposed set downstream, so devices that
    stop answering drop out at the next run instead of keeping stale values.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.log = logger or log
        self.latest: List[MetricPoint] = []
        self._written = False

    def begin_run(self) -> None:
        self.latest = []
        self._written = False

    def end_run(self) -> None:
        if not self._written:
            self._publish(registry_for([]))

    def _publish(self, registry: CollectorRegistry) -> None:
        raise NotImplementedError

    def write_points(self, points: Sequence[MetricPoint]) -> None:
        if not points:
            return
        # cloud runs flush per device, earlier devices must survive the next write
        merged = {(p.series, p.alias): p for p in self.latest}
        merged.update({(p.series, p.alias): p for p in points})
        self.latest = list(merged.values())
        self._publish(registry_for(self.latest))
        self._written = True


class PushgatewaySink(_RegistrySink):
    def __init__(
        self,
        gateway: str = "localhost:9091",
        job: str = "kasa",
        timeout_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger)
        self.gateway = gateway
        self.job = job
        self.timeout_seconds = float(timeout_seconds)

    def _publish(self, registry: CollectorRegistry) -> None:
        try:
            push_to_gateway(self.gateway, job=self.job, registry=registry, timeout=self.timeout_seconds)
        except OSError as e:
            raise SinkError(f"pushgateway push failed: {e}") from e
        self.log.info("pushed %d points to %s job=%s", len(self.latest), self.gateway, self.job)


class TextfileSink(_RegistrySink):
    def __init__(self, path: str, logger: Optional[logging.Logger] = None) -> None:
        super().__init__(logger)
        self.path = path

    def _publish(self, registry: CollectorRegistry) -> None:
        try:
            write_to_textfile(self.path, registry)
        except OSError as e:
            raise SinkError(f"textfile write failed: {e}") from e
        self.log.info("wrote %d points to %s", len(self.latest), self.path)


def build_sink(cfg) -> Sink:
    kind = (cfg.type or "influxdb").lower()
    if kind == "influxdb":
        return InfluxSink(
            url=cfg.url or "http://localhost:8086",
            database=cfg.database,
            username=cfg.username,
            password=cfg.password,
            timeout_seconds=cfg.timeout_seconds,
        )
    if kind == "pushgateway":
        return PushgatewaySink(gateway=cfg.url or "localhost:9091", job=cfg.job, timeout_seconds=cfg.timeout_seconds)
    if kind == "textfile":
        if not cfg.path:
            raise ValueError("sink.path is required for the textfile sink")
        return TextfileSink(cfg.path)
    raise ValueError(f"unknown sink type {cfg.type!r}")
