from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Callable, Dict, List, Optional

from . import protocol
from .cloud import CloudClient, CloudSession
from .discovery import discover
from .errors import DeviceError, MalformedResponse
from .metrics import DeviceIdentity, has_emeter, response_timestamp, sysinfo_of

log = logging.getLogger(__name__)


@dataclass
class DeviceReading:
    identity: DeviceIdentity
    response: Dict[str, Any]
    timestamp: float


class DeviceSource:
    """Where devices come from: ``enumerate`` once per run, then ``query`` each of them."""

    flush_per_device = False

    def enumerate(self) -> List[DeviceIdentity]:
        raise NotImplementedError

    def query(self, device: DeviceIdentity) -> DeviceReading:
        raise NotImplementedError


class LocalSource(DeviceSource):
    def __init__(
        self,
        window_seconds: float = 3.0,
        max_reply_bytes: int = 4096,
        target: str = "255.255.255.255",
        port: int = protocol.DEVICE_PORT,
        poll_interval_seconds: float = 0.01,
        device_time_utc: bool = False,
        query: Optional[Dict[str, Any]] = None,
        discover_fn: Callable[..., Any] = discover,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.window_seconds = float(window_seconds)
        self.max_reply_bytes = int(max_reply_bytes)
        self.target = target
        self.port = int(port)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.tz = timezone.utc if device_time_utc else None
        self.request = query if query is not None else protocol.DISCOVERY_QUERY
        self.discover_fn = discover_fn
        self.clock = clock
        self.log = logger or log

        self._sent_at: float = 0.0
        self._replies: Dict[str, Dict[str, Any]] = {}

    def enumerate(self) -> List[DeviceIdentity]:
        self._sent_at = self.clock()
        replies = self.discover_fn(
            self.request,
            window=self.window_seconds,
            max_reply_bytes=self.max_reply_bytes,
            target=self.target,
            port=self.port,
            poll_interval=self.poll_interval_seconds,
            logger=self.log,
        )

        self._replies = {}
        out: List[DeviceIdentity] = []
        for address, response in replies:
            self._replies[address] = response
            try:
                sysinfo = sysinfo_of(response)
            except MalformedResponse:
                sysinfo = {}
            out.append(
                DeviceIdentity(
                    alias=str(sysinfo.get("alias") or address),
                    device_id=str(sysinfo.get("deviceId") or ""),
                    address=address,
                )
            )
        self.log.info("%d devices answered within %.1fs", len(out), self.window_seconds)
        return out

    def query(self, device: DeviceIdentity) -> DeviceReading:
        response = self._replies.get(device.address)
        if response is None:
            raise DeviceError(f"no reply held for {device.address}")
        ts = response_timestamp(response, self._sent_at, self.tz)
        return DeviceReading(device, response, ts)


class CloudSource(DeviceSource):
    flush_per_device = True

    def __init__(
        self,
        client: CloudClient,
        username: str,
        password: str,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.username = username
        self.password = password
        self.clock = clock
        self.log = logger or log
        self.session: Optional[CloudSession] = None

    def enumerate(self) -> List[DeviceIdentity]:
        self.session = self.client.authenticate(self.username, self.password)
        return self.client.list_devices(self.session)

    def query(self, device: DeviceIdentity) -> DeviceReading:
        if self.session is None:
            raise RuntimeError("enumerate() must run before query()")

        ts = self.clock()
        response = dict(self.client.query(self.session, device, protocol.SYSINFO_QUERY))
        sysinfo = sysinfo_of(response)

        if has_emeter(sysinfo) and not sysinfo.get("children"):
            try:
                response.update(self.client.query(self.session, device, protocol.EMETER_QUERY))
            except (DeviceError, MalformedResponse) as e:
                self.log.warning("device '%s' emeter read failed, power skipped: %s", device.alias, e)

        return DeviceReading(device, response, ts)
