import json

from kasa_recorder import protocol


def test_encrypt_known_prefix() -> None:
    # 171 ^ '{' = 0xd0, then each byte is keyed by the previous ciphertext byte
    assert protocol.encrypt(b'{"sy') == bytes([0xD0, 0xF2, 0x81, 0xF8])


def test_decrypt_inverts_encrypt() -> None:
    samples = [
        b"",
        b"\x00",
        bytes(range(256)),
        protocol.serialize(protocol.DISCOVERY_QUERY),
        "Küche Lampe ☕".encode("utf-8"),
    ]
    for raw in samples:
        assert protocol.decrypt(protocol.encrypt(raw)) == raw


def test_encrypt_is_deterministic_and_restarts_keystream() -> None:
    a = protocol.encrypt(b"hello")
    b = protocol.encrypt(b"hello")
    assert a == b
    assert a[0] == protocol.INITIALIZATION_VECTOR ^ ord("h")


def test_no_length_prefix_or_padding() -> None:
    raw = b'{"system":{"get_sysinfo":null}}'
    assert len(protocol.encrypt(raw)) == len(raw)


def test_decrypt_with_wrong_key_rule_is_silent_garbage() -> None:
    raw = b'{"a":1}'
    key = protocol.INITIALIZATION_VECTOR
    plain_keyed = bytearray()
    for b in raw:
        plain_keyed.append(key ^ b)
        key = b
    out = protocol.decrypt(bytes(plain_keyed))
    assert len(out) == len(raw)
    assert out != raw


def test_serialize_is_compact_json() -> None:
    out = protocol.serialize(protocol.DISCOVERY_QUERY)
    assert b" " not in out
    assert json.loads(out) == {
        "system": {"get_sysinfo": None},
        "time": {"get_time": None},
        "emeter": {"get_realtime": None},
    }


def test_scoped_adds_child_context() -> None:
    assert protocol.scoped(protocol.SYSINFO_QUERY, None) == protocol.SYSINFO_QUERY
    scoped = protocol.scoped(protocol.EMETER_QUERY, "8006ABCD00")
    assert scoped["context"] == {"child_ids": ["8006ABCD00"]}
    assert scoped["emeter"] == {"get_realtime": None}
    assert "context" not in protocol.EMETER_QUERY
