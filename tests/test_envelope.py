import json

import pytest

from mqttchat.envelope import ChatEnvelope, PresenceEvent, decode, encode
from mqttchat.errors import DecodingError, EncodingError


def test_chat_envelope_round_trip():
    envelope = ChatEnvelope.chat("alice", "hello there")
    assert decode(encode(envelope)) == envelope


def test_presence_envelope_round_trip():
    envelope = ChatEnvelope.presence("bob", PresenceEvent.STOP_TYPING)
    decoded = decode(encode(envelope))
    assert decoded == envelope
    assert decoded.is_presence
    assert decoded.text is None


def test_non_ascii_text_round_trip():
    envelope = ChatEnvelope.chat("zoë", "ça va? 👋")
    assert decode(encode(envelope)) == envelope


def test_encode_omits_absent_payload_key():
    envelope = ChatEnvelope("alice", event=PresenceEvent.TYPING, id="abc")
    message = json.loads(encode(envelope))
    assert message == {"id": "abc", "sender": "alice", "event": "typing"}


def test_new_envelopes_get_distinct_ids():
    assert ChatEnvelope.chat("a", "x").id != ChatEnvelope.chat("a", "x").id


@pytest.mark.parametrize(
    "envelope",
    [
        ChatEnvelope("alice"),
        ChatEnvelope("alice", text="hi", event=PresenceEvent.TYPING),
        ChatEnvelope("alice", event="dancing"),
        ChatEnvelope("alice", text=123),
        ChatEnvelope(42, text="hi"),
        ChatEnvelope(None, text="hi"),
        ChatEnvelope("alice", text="hi", id=5),
    ],
)
def test_encode_rejects_malformed_envelope(envelope):
    with pytest.raises(EncodingError):
        encode(envelope)


def test_decode_ignores_unknown_fields():
    payload = b'{"id":"1","sender":"bob","text":"hi","color":"red","v":2}'
    envelope = decode(payload)
    assert envelope == ChatEnvelope("bob", text="hi", id="1")


def test_decode_accepts_str():
    assert decode('{"id":"1","sender":"bob","event":"typing"}').event == PresenceEvent.TYPING


def test_decode_treats_null_as_absent():
    envelope = decode(b'{"id":"1","sender":"bob","text":"hi","event":null}')
    assert envelope.is_chat


@pytest.mark.parametrize(
    "payload",
    [
        b'{"id":"1","sender":"bob","text":"hi","event":"typing"}',
        b'{"id":"1","sender":"bob"}',
        b'{"id":"1","sender":"bob","text":null,"event":null}',
    ],
)
def test_decode_rejects_both_or_neither_payload(payload):
    with pytest.raises(DecodingError):
        decode(payload)


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"\xff\xfe\x00",
        b"[1, 2, 3]",
        b'"just a string"',
        b'{"sender":"bob","text":"hi"}',
        b'{"id":"1","text":"hi"}',
        b'{"id":"1","sender":42,"text":"hi"}',
        b'{"id":"1","sender":"bob","text":7}',
        b'{"id":"1","sender":"bob","event":"dancing"}',
    ],
)
def test_decode_rejects_invalid_payloads(payload):
    with pytest.raises(DecodingError):
        decode(payload)


def test_encode_rejects_empty_id():
    envelope = ChatEnvelope.chat("alice", "hi")
    envelope.id = ""
    with pytest.raises(EncodingError):
        encode(envelope)
