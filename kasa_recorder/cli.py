from __future__ import annotations

import logging
import os
import signal
import sys
from threading import Event
from typing import Optional

import click

from . import RECORDER_VERSION
from .cloud import CloudClient
from .config import RecorderConfig, find_config_file, load_config_file, lookup_credentials, to_recorder_config
from .errors import KasaError
from .recorder import Recorder
from .sinks import build_sink
from .sources import CloudSource, DeviceSource, LocalSource


def setup_logging(level: str, verbose: bool = False) -> None:
    lvl = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # requests logs every connection at DEBUG; only show it with --verbose
    logging.getLogger("urllib3").setLevel(logging.DEBUG if verbose else max(lvl, logging.WARNING))


def build_source(cfg: RecorderConfig) -> DeviceSource:
    if cfg.transport == "cloud":
        username, password = lookup_credentials(cfg.cloud)
        client = CloudClient(
            url=cfg.cloud.url,
            timeout_seconds=cfg.cloud.timeout_seconds,
            retries=cfg.cloud.retries,
            retry_delay_seconds=cfg.cloud.retry_delay_seconds,
            app_type=cfg.cloud.app_type,
            terminal_uuid=cfg.cloud.terminal_uuid,
        )
        return CloudSource(client, username, password)

    d = cfg.discovery
    return LocalSource(
        window_seconds=d.window_seconds,
        max_reply_bytes=d.max_reply_bytes,
        target=d.target,
        port=d.port,
        poll_interval_seconds=d.poll_interval_seconds,
        device_time_utc=d.device_time_utc,
    )


@click.command()
@click.option("--config.file", "config_file", default=None, help="YAML or JSON config file.")
@click.option("--transport", type=click.Choice(["local", "cloud"]), default=None, help="Where to find devices.")
@click.option("--dry-run/--no-dry-run", "dry_run", default=None, help="Collect but do not write to the sink.")
@click.option("--interval", "interval", type=float, default=None, help="Repeat every N seconds (0 runs once).")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.option("--log.level", "log_level", default=os.environ.get("LOG_LEVEL", "INFO"), show_default=True)
@click.version_option(RECORDER_VERSION)
def main(
    config_file: Optional[str],
    transport: Optional[str],
    dry_run: Optional[bool],
    interval: Optional[float],
    verbose: bool,
    log_level: str,
) -> None:
    """Record Kasa smart plug state and power."""
    setup_logging(log_level, verbose)

    cfg_path = find_config_file(config_file)
    try:
        raw = load_config_file(cfg_path) if cfg_path else {}
        cfg = to_recorder_config(raw)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"bad config {cfg_path}: {e}")
    logging.info("config_file=%s", cfg_path or "<defaults>")

    if transport is not None:
        cfg.transport = transport
    if dry_run is not None:
        cfg.dry_run = dry_run
    if interval is not None:
        cfg.interval_seconds = interval

    try:
        source = build_source(cfg)
        sink = None if cfg.dry_run else build_sink(cfg.sink)
    except ValueError as e:
        raise click.ClickException(str(e))

    recorder = Recorder(source, sink, dry_run=cfg.dry_run)

    logging.info(
        "transport=%s dry_run=%s interval=%.1fs sink=%s",
        cfg.transport,
        1 if cfg.dry_run else 0,
        cfg.interval_seconds,
        "none" if sink is None else cfg.sink.type,
    )

    if cfg.interval_seconds > 0:
        stop = Event()

        def _sig(*_):
            stop.set()

        signal.signal(signal.SIGTERM, _sig)
        signal.signal(signal.SIGINT, _sig)
        recorder.run_forever(cfg.interval_seconds, stop)
        return

    try:
        recorder.run_once()
    except (KasaError, OSError):
        logging.exception("collection run failed")
        sys.exit(1)
