"""
tests/unit/test_protocol.py — Relay Message Protocol Tests

Covers decoding of every message kind, the Unknown catch-all, and the
malformed inputs that raise ProtocolError.
"""

import json
import pytest

from shellrelay.exceptions import ProtocolError
from shellrelay.protocol.messages import (
    Auth,
    AuthMethod,
    AuthSuccess,
    Closed,
    Connect,
    Connected,
    Data,
    Disconnect,
    Error,
    MessageType,
    Ping,
    Pong,
    RemoteConfig,
    Unknown,
    decode,
    encode,
)


# ─────────────────────────────────────────────────────────────────────────────
# Decoding known types
# ─────────────────────────────────────────────────────────────────────────────

class TestDecodeKnownTypes:
    def test_auth(self):
        msg = decode('{"type": "auth", "username": "admin", "password": "y"}')
        assert msg == Auth(username="admin", password="y")

    def test_auth_success_fields_optional(self):
        assert decode('{"type": "auth_success"}') == AuthSuccess()
        msg = decode('{"type": "auth_success", "token": "t1", "user": "admin"}')
        assert msg.token == "t1"
        assert msg.user == "admin"

    def test_connect_password(self):
        raw = json.dumps({
            "type": "connect",
            "config": {"host": "10.0.0.5", "port": 22, "username": "root",
                       "password": "x", "authMethod": "password"},
        })
        msg = decode(raw)
        assert isinstance(msg, Connect)
        assert msg.protocol == "ssh"
        assert msg.config.host == "10.0.0.5"
        assert msg.config.password == "x"
        assert msg.config.auth_method is AuthMethod.PASSWORD

    def test_connect_key_method_inferred_from_private_key(self):
        raw = json.dumps({
            "type": "connect",
            "config": {"host": "h", "username": "u", "privateKey": "-----BEGIN..."},
        })
        msg = decode(raw)
        assert msg.config.auth_method is AuthMethod.KEY
        assert msg.config.port == 22

    def test_connect_protocol_field(self):
        raw = json.dumps({"type": "connect", "protocol": "webrtc",
                          "config": {"host": "h"}})
        assert decode(raw).protocol == "webrtc"

    def test_simple_types(self):
        assert decode('{"type": "connected"}') == Connected()
        assert decode('{"type": "disconnect"}') == Disconnect()
        assert decode('{"type": "closed"}') == Closed()
        assert decode('{"type": "ping"}') == Ping()
        assert decode('{"type": "pong"}') == Pong()

    def test_data_preserves_control_characters(self):
        msg = decode(json.dumps({"type": "data", "data": "\x1b[31mred\x1b[0m\r\n"}))
        assert msg == Data(data="\x1b[31mred\x1b[0m\r\n")

    def test_error_with_and_without_code(self):
        assert decode('{"type": "error", "error": "disk full"}') == Error(error="disk full")
        msg = decode('{"type": "error", "error": "nope", "code": "auth_failed"}')
        assert msg.code == "auth_failed"

    def test_error_without_text_gets_placeholder(self):
        assert decode('{"type": "error"}').error == "Unknown error"

    def test_bytes_frame_accepted(self):
        assert decode(b'{"type": "ping"}') == Ping()


# ─────────────────────────────────────────────────────────────────────────────
# Unknown catch-all
# ─────────────────────────────────────────────────────────────────────────────

class TestUnknown:
    def test_unrecognised_type_is_unknown_not_error(self):
        msg = decode('{"type": "webrtc_offer", "sdp": "v=0"}')
        assert isinstance(msg, Unknown)
        assert msg.type_name == "webrtc_offer"
        assert msg.fields == {"sdp": "v=0"}

    def test_unknown_reencodes_with_its_fields(self):
        msg = Unknown(type_name="custom", fields={"a": 1})
        assert json.loads(encode(msg)) == {"type": "custom", "a": 1}


# ─────────────────────────────────────────────────────────────────────────────
# Malformed input
# ─────────────────────────────────────────────────────────────────────────────

class TestMalformed:
    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        '"just a string"',
        '{"no_type": true}',
        '{"type": 5}',
    ])
    def test_invalid_frames(self, raw):
        with pytest.raises(ProtocolError):
            decode(raw)

    def test_auth_missing_password(self):
        with pytest.raises(ProtocolError, match="password"):
            decode('{"type": "auth", "username": "admin"}')

    def test_data_must_be_text(self):
        with pytest.raises(ProtocolError):
            decode('{"type": "data", "data": 42}')

    def test_connect_without_config(self):
        with pytest.raises(ProtocolError, match="config"):
            decode('{"type": "connect"}')

    @pytest.mark.parametrize("port", [0, 70000, "22", True])
    def test_connect_bad_port(self, port):
        raw = json.dumps({"type": "connect", "config": {"host": "h", "port": port}})
        with pytest.raises(ProtocolError, match="port"):
            decode(raw)

    def test_connect_bad_auth_method(self):
        raw = json.dumps({"type": "connect",
                          "config": {"host": "h", "authMethod": "kerberos"}})
        with pytest.raises(ProtocolError, match="authMethod"):
            decode(raw)

    def test_deeply_nested_frame(self):
        raw = "[" * 200000 + "]" * 200000
        with pytest.raises(ProtocolError, match="nested"):
            decode(raw)

    def test_protocol_error_keeps_raw(self):
        with pytest.raises(ProtocolError) as exc_info:
            decode("garbage")
        assert exc_info.value.raw == "garbage"


# ─────────────────────────────────────────────────────────────────────────────
# Encoding
# ─────────────────────────────────────────────────────────────────────────────

class TestEncode:
    def test_connect_wire_form_uses_camel_case(self):
        cfg = RemoteConfig(host="h", port=2222, username="u",
                           private_key="KEY", auth_method=AuthMethod.KEY)
        wire = json.loads(encode(Connect(config=cfg)))
        assert wire == {
            "type": "connect",
            "config": {"host": "h", "port": 2222, "username": "u",
                       "privateKey": "KEY", "authMethod": "key"},
        }

    def test_error_code_omitted_when_absent(self):
        assert json.loads(encode(Error(error="x"))) == {"type": "error", "error": "x"}

    def test_secrets_hidden_from_repr(self):
        assert "hunter2" not in repr(Auth(username="admin", password="hunter2"))
        cfg = RemoteConfig(host="h", password="hunter2")
        assert "hunter2" not in repr(cfg)

    def test_every_message_type_has_a_decoder(self):
        for mtype in MessageType:
            payload = {"type": mtype.value, "username": "u", "password": "p",
                       "data": "d", "config": {"host": "h"}}
            assert not isinstance(decode(json.dumps(payload)), Unknown)
