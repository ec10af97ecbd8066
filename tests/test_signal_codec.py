"""Tests for the copy-paste signaling codec."""

import base64
import zlib

import pytest

from errors import SignalDecodeError
from signaling import codec
from signaling.models import SignalEnvelope, SignalKind


def _offer(payload: bytes = b'{"token":"abc","key":"00ff"}') -> SignalEnvelope:
    return SignalEnvelope(kind=SignalKind.OFFER, payload=payload)


class TestEncodeDecode:
    def test_round_trip_preserves_kind_and_payload(self):
        env = SignalEnvelope(kind=SignalKind.CANDIDATE, payload=bytes(range(256)))
        assert codec.decode(codec.encode(env)) == env

    def test_blob_is_single_line_printable_text(self):
        blob = codec.encode(_offer(b"x" * 2000))
        assert blob.startswith(codec.BLOB_PREFIX)
        assert blob.isascii()
        assert "\n" not in blob and " " not in blob
        assert codec.SEPARATOR not in blob

    def test_empty_payload(self):
        env = SignalEnvelope(kind=SignalKind.ANSWER, payload=b"")
        assert codec.decode(codec.encode(env)).payload == b""

    def test_whitespace_from_pasting_is_ignored(self):
        blob = codec.encode(_offer())
        wrapped = "  " + blob[:10] + "\n" + blob[10:] + "\r\n"
        assert codec.decode(wrapped) == _offer()


class TestMalformedInput:
    def test_missing_prefix(self):
        with pytest.raises(SignalDecodeError):
            codec.decode("hello world")

    def test_truncated_blob(self):
        blob = codec.encode(_offer(b"y" * 500))
        with pytest.raises(SignalDecodeError):
            codec.decode(blob[: len(blob) // 2])

    def test_not_base64(self):
        with pytest.raises(SignalDecodeError):
            codec.decode(codec.BLOB_PREFIX + "!!!not*base64!!!")

    def test_non_ascii(self):
        with pytest.raises(SignalDecodeError):
            codec.decode(codec.BLOB_PREFIX + "ünïcode")

    def test_valid_zlib_but_not_json(self):
        packed = base64.urlsafe_b64encode(zlib.compress(b"not json")).rstrip(b"=")
        with pytest.raises(SignalDecodeError):
            codec.decode(codec.BLOB_PREFIX + packed.decode())

    def test_unknown_kind(self):
        body = b'{"k":"hangup","p":""}'
        packed = base64.urlsafe_b64encode(zlib.compress(body)).rstrip(b"=")
        with pytest.raises(SignalDecodeError):
            codec.decode(codec.BLOB_PREFIX + packed.decode())

    def test_missing_field(self):
        body = b'{"k":"offer"}'
        packed = base64.urlsafe_b64encode(zlib.compress(body)).rstrip(b"=")
        with pytest.raises(SignalDecodeError):
            codec.decode(codec.BLOB_PREFIX + packed.decode())

    def test_json_array_instead_of_object(self):
        packed = base64.urlsafe_b64encode(zlib.compress(b"[1, 2]")).rstrip(b"=")
        with pytest.raises(SignalDecodeError):
            codec.decode(codec.BLOB_PREFIX + packed.decode())


class TestMany:
    def test_join_and_split_keeps_order(self):
        envs = [
            _offer(),
            SignalEnvelope(kind=SignalKind.CANDIDATE, payload=b'{"host":"10.0.0.2","port":5}'),
            SignalEnvelope(kind=SignalKind.CANDIDATE, payload=b'{"host":"127.0.0.1","port":5}'),
        ]
        assert codec.decode_many(codec.encode_many(envs)) == envs

    def test_empty_text_is_rejected(self):
        with pytest.raises(SignalDecodeError):
            codec.decode_many("  \n ")

    def test_one_bad_part_rejects_everything(self):
        text = codec.encode(_offer()) + codec.SEPARATOR + "PD1-garbage"
        with pytest.raises(SignalDecodeError):
            codec.decode_many(text)

    def test_stray_separators_are_ignored(self):
        text = codec.SEPARATOR + codec.encode(_offer()) + codec.SEPARATOR
        assert codec.decode_many(text) == [_offer()]
