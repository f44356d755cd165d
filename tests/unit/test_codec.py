"""
Unit tests for the job envelope codec.
"""

import json

import pytest

from amqp_jobs.broker.codec import decode, encode
from amqp_jobs.exceptions import MalformedPayload


class TestEncode:
    """Tests for encode()."""

    def test_wire_format(self):
        """Envelope is a JSON object with exactly job, data and attempts."""
        body = encode("SendEmail", {"to": "a@b.com"}, 0)

        assert json.loads(body) == {"job": "SendEmail", "data": {"to": "a@b.com"}, "attempts": 0}
        assert body.decode("utf-8").startswith('{"job":"SendEmail"')

    def test_default_attempts(self):
        assert json.loads(encode("Cleanup", None))["attempts"] == 0

    @pytest.mark.parametrize("attempts", [-1, True, "2"])
    def test_invalid_attempts_rejected(self, attempts):
        with pytest.raises(ValueError):
            encode("SendEmail", {}, attempts)

    @pytest.mark.parametrize("data", [float("nan"), float("inf"), {"v": [1.0, float("-inf")]}])
    def test_non_finite_data_rejected(self, data):
        with pytest.raises(ValueError):
            encode("SendEmail", data)


class TestDecode:
    """Tests for decode()."""

    @pytest.mark.parametrize(
        "data",
        [
            {"to": "a@b.com", "cc": ["x@y.com"], "meta": {"retry": True, "weight": 1.5}},
            ["a", 1, None],
            "",
            None,
            "héllo wörld",
        ],
    )
    def test_round_trip(self, data):
        """decode(encode(j, d, a)) gives back (j, d, a)."""
        envelope = decode(encode("SendEmail", data, 4))

        assert envelope.as_tuple() == ("SendEmail", data, 4)

    def test_extra_fields_ignored(self):
        body = b'{"job": "SendEmail", "data": {}, "attempts": 1, "origin": "php"}'

        assert decode(body).as_tuple() == ("SendEmail", {}, 1)

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"\xff\xfe\x00",
            b"[1, 2, 3]",
            b'"SendEmail"',
            b'{"data": {}, "attempts": 0}',
            b'{"job": "SendEmail", "attempts": 0}',
            b'{"job": "SendEmail", "data": {}}',
            b'{"job": 42, "data": {}, "attempts": 0}',
            b'{"job": "SendEmail", "data": {}, "attempts": "0"}',
            b'{"job": "SendEmail", "data": {}, "attempts": -1}',
            b'{"job": "SendEmail", "data": {}, "attempts": true}',
            b'{"job": "SendEmail", "data": NaN, "attempts": 0}',
            b'{"job": "SendEmail", "data": {"v": [1, Infinity]}, "attempts": 0}',
        ],
    )
    def test_malformed(self, body):
        """Invalid envelopes raise MalformedPayload carrying the body."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode(body)

        assert exc_info.value.body == body

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            decode(b"{}")
