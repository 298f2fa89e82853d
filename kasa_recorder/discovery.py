from __future__ import annotations

import json
import logging
import socket
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import protocol

BROADCAST_TARGET = "255.255.255.255"
RESPONSE_TIME = 3.0
RESPONSE_LENGTH = 4096

log = logging.getLogger(__name__)


def _open_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def _decode_reply(data: bytes) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(protocol.decrypt(data))
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    return obj


def discover(
    query: Optional[Dict[str, Any]] = None,
    window: float = RESPONSE_TIME,
    max_reply_bytes: int = RESPONSE_LENGTH,
    target: str = BROADCAST_TARGET,
    port: int = protocol.DEVICE_PORT,
    poll_interval: float = 0.01,
    logger: Optional[logging.Logger] = None,
    socket_factory: Callable[[], socket.socket] = _open_socket,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Tuple[str, Dict[str, Any]]]:
    """Broadcast ``query`` and collect replies until ``window`` seconds after the send.

    The loop ends on the deadline alone. Replies are keyed by source
    address (first one wins); anything that does not decode to a JSON
    object is logged and dropped.
    """
    lg = logger or log
    req = protocol.serialize(query if query is not None else protocol.DISCOVERY_QUERY)

    sock = socket_factory()
    try:
        lg.info("sending broadcast to %s on port %s", target, port)
        lg.debug("request %s", req)
        sock.sendto(protocol.encrypt(req), (target, port))

        deadline = clock() + window
        replies: Dict[str, Dict[str, Any]] = {}
        while clock() < deadline:
            try:
                data, addr = sock.recvfrom(max_reply_bytes)
            except (BlockingIOError, InterruptedError):
                if poll_interval > 0:
                    sleep(min(poll_interval, max(0.0, deadline - clock())))
                continue

            host = addr[0]
            device = _decode_reply(data)
            if device is None:
                lg.warning("malformed reply from %s (%d bytes), skipped", host, len(data))
                continue
            if host in replies:
                lg.debug("duplicate reply from %s ignored", host)
                continue
            lg.debug("reply from %s: %s", host, device)
            replies[host] = device

        return list(replies.items())
    finally:
        lg.info("closing udp socket")
        sock.close()
