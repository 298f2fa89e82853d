from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from dotenv import find_dotenv, load_dotenv

CONFIG_ENV = "KASA_RECORDER_CONFIG"
TRANSPORTS = ("local", "cloud")


@dataclass
class DiscoveryConfig:
    target: str = "255.255.255.255"
    port: int = 9999
    window_seconds: float = 3.0
    max_reply_bytes: int = 4096
    poll_interval_seconds: float = 0.01
    device_time_utc: bool = False


@dataclass
class CloudConfig:
    url: str = "https://wap.tplinkcloud.com"
    username: str = ""
    password: str = ""
    timeout_seconds: float = 10.0
    retries: int = 3
    retry_delay_seconds: float = 0.0
    app_type: str = "Kasa_Android"
    terminal_uuid: Optional[str] = None


@dataclass
class SinkConfig:
    type: str = "influxdb"
    url: str = ""
    database: str = "kasa"
    username: Optional[str] = None
    password: Optional[str] = None
    timeout_seconds: float = 5.0
    job: str = "kasa"
    path: str = ""


@dataclass
class RecorderConfig:
    transport: str = "local"
    dry_run: bool = False
    interval_seconds: float = 0.0
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path)
    raw = p.read_text(encoding="utf-8")

    data = json.loads(raw) if p.suffix.lower() == ".json" else yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{p.name}: config root must be a mapping, got {type(data).__name__}")
    return data


def find_config_file(explicit: Optional[str] = None) -> Optional[str]:
    cfg_path = explicit or os.environ.get(CONFIG_ENV, "").strip() or None
    if cfg_path is not None:
        return cfg_path

    candidates: List[Path] = [
        Path.cwd() / "config.yaml",
        Path("/config/config.yaml"),
    ]
    for c in candidates:
        if c.is_file():
            return str(c)
    return None


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    s = cfg.get(name, {})
    return s if isinstance(s, dict) else {}


def _opt_str(x: Any) -> Optional[str]:
    if x is None:
        return None
    s = str(x).strip()
    return s or None


def to_recorder_config(cfg: Dict[str, Any]) -> RecorderConfig:
    rec = _section(cfg, "recorder")
    disc = _section(cfg, "discovery")
    cloud = _section(cfg, "cloud")
    sink = _section(cfg, "sink")

    transport = str(rec.get("transport", "local")).strip().lower()
    if transport not in TRANSPORTS:
        raise ValueError(f"recorder.transport must be one of {', '.join(TRANSPORTS)}, got {transport!r}")

    out = RecorderConfig(
        transport=transport,
        dry_run=bool(rec.get("dry_run", False)),
        interval_seconds=float(rec.get("interval_seconds", 0.0)),
        discovery=DiscoveryConfig(
            target=str(disc.get("target", "255.255.255.255")),
            port=int(disc.get("port", 9999)),
            window_seconds=float(disc.get("window_seconds", 3.0)),
            max_reply_bytes=int(disc.get("max_reply_bytes", 4096)),
            poll_interval_seconds=float(disc.get("poll_interval_seconds", 0.01)),
            device_time_utc=bool(disc.get("device_time_utc", False)),
        ),
        cloud=CloudConfig(
            url=str(cloud.get("url", "https://wap.tplinkcloud.com")),
            username=str(cloud.get("username") or ""),
            password=str(cloud.get("password") or ""),
            timeout_seconds=float(cloud.get("timeout_seconds", 10.0)),
            retries=int(cloud.get("retries", 3)),
            retry_delay_seconds=float(cloud.get("retry_delay_seconds", 0.0)),
            app_type=str(cloud.get("app_type", "Kasa_Android")),
            terminal_uuid=_opt_str(cloud.get("terminal_uuid")),
        ),
        sink=SinkConfig(
            type=str(sink.get("type", "influxdb")).strip().lower(),
            url=str(sink.get("url") or ""),
            database=str(sink.get("database", "kasa")),
            username=_opt_str(sink.get("username")),
            password=_opt_str(sink.get("password")),
            timeout_seconds=float(sink.get("timeout_seconds", 5.0)),
            job=str(sink.get("job", "kasa")),
            path=str(sink.get("path") or ""),
        ),
    )

    if out.discovery.window_seconds <= 0:
        raise ValueError("discovery.window_seconds must be positive")
    if out.discovery.max_reply_bytes <= 0:
        raise ValueError("discovery.max_reply_bytes must be positive")
    if out.cloud.retries < 0:
        raise ValueError("cloud.retries must not be negative")
    return out


def lookup_credentials(cloud: CloudConfig, dotenv_path: Optional[str] = None) -> Tuple[str, str]:
    if cloud.username and cloud.password:
        return cloud.username, cloud.password
    load_dotenv(dotenv_path or find_dotenv(usecwd=True))
    username = cloud.username or os.environ.get("KASA_USERNAME", "")
    password = cloud.password or os.environ.get("KASA_PASSWORD", "")
    return username, password
