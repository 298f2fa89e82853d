from __future__ import annotations

import logging
import time
from threading import Event
from typing import List, Optional, Sequence

from .errors import DeviceError, MalformedResponse, SinkError
from .metrics import POWER, MetricPoint, extract
from .sinks import Sink
from .sources import DeviceSource

log = logging.getLogger(__name__)


class Recorder:
    def __init__(
        self,
        source: DeviceSource,
        sink: Optional[Sink],
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.source = source
        self.sink = sink
        self.dry_run = dry_run
        self.log = logger or log

    def _flush(self, points: Sequence[MetricPoint]) -> None:
        if not points:
            return
        if self.dry_run or self.sink is None:
            self.log.debug("dry run, %d points not written", len(points))
            return
        try:
            self.sink.write_points(points)
        except SinkError as e:
            self.log.error("sink write failed, %d points dropped: %s", len(points), e)

    def _sink_hook(self, name: str) -> None:
        if self.dry_run or self.sink is None:
            return
        try:
            getattr(self.sink, name)()
        except SinkError as e:
            self.log.error("sink %s failed: %s", name, e)

    def run_once(self) -> List[MetricPoint]:
        """One collection run. Per-device failures are logged and skipped; anything else propagates."""
        self._sink_hook("begin_run")
        devices = self.source.enumerate()

        batch: List[MetricPoint] = []
        collected: List[MetricPoint] = []
        for device in devices:
            try:
                reading = self.source.query(device)
                points = extract(reading.response, device, reading.timestamp)
            except (DeviceError, MalformedResponse) as e:
                self.log.warning("device '%s' skipped: %s", device.alias, e)
                continue

            for p in points:
                label = "power" if p.series == POWER else "state"
                self.log.info("device '%s' %s = %s", p.alias, label, p.value)

            collected.extend(points)
            if self.source.flush_per_device:
                self._flush(points)
            else:
                batch.extend(points)

        self._flush(batch)
        self._sink_hook("end_run")
        self.log.info("run complete: %d devices, %d points", len(devices), len(collected))
        return collected

    def run_forever(self, interval_seconds: float, stop_event: Event) -> None:
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except Exception:
                self.log.exception("collection run failed")
            stop_event.wait(max(0.0, interval_seconds - (time.monotonic() - started)))
