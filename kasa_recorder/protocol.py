"""TP-Link Smart Home wire codec.

Payloads are obscured with an autokey XOR cipher: the key starts at 171
and after every byte becomes the ciphertext byte just produced (encrypt)
or just consumed (decrypt). There is no padding and no length prefix at
this layer.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

INITIALIZATION_VECTOR = 171
DEVICE_PORT = 9999

DISCOVERY_QUERY: Dict[str, Any] = {
    "system": {"get_sysinfo": None},
    "time": {"get_time": None},
    "emeter": {"get_realtime": None},
}
SYSINFO_QUERY: Dict[str, Any] = {"system": {"get_sysinfo": None}}
EMETER_QUERY: Dict[str, Any] = {"emeter": {"get_realtime": None}}


def encrypt(plaintext: bytes) -> bytes:
    key = INITIALIZATION_VECTOR
    out = bytearray()
    for plainbyte in plaintext:
        cipherbyte = key ^ plainbyte
        key = cipherbyte
        out.append(cipherbyte)
    return bytes(out)


def decrypt(ciphertext: bytes) -> bytes:
    key = INITIALIZATION_VECTOR
    out = bytearray()
    for cipherbyte in ciphertext:
        out.append(key ^ cipherbyte)
        key = cipherbyte
    return bytes(out)


def serialize(query: Dict[str, Any]) -> bytes:
    return json.dumps(query, separators=(",", ":")).encode("utf-8")


def scoped(query: Dict[str, Any], child_id: Optional[str]) -> Dict[str, Any]:
    if not child_id:
        return dict(query)
    out: Dict[str, Any] = {"context": {"child_ids": [child_id]}}
    out.update(query)
    return out
