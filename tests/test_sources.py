from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests
from twilio.base.exceptions import TwilioRestException

from sms_codes.config import ProviderConfig
from sms_codes.errors import ErrorKind, MessageSourceError, classify_error
from sms_codes.gateway_client import GatewayMessageSource
from sms_codes.plivo_client import PlivoMessageSource
from sms_codes.sources import build_message_source
from sms_codes.twilio_client import TwilioMessageSource

SINCE = datetime(2024, 5, 1, 11, 55, tzinfo=UTC)


def _make_twilio() -> TwilioMessageSource:
    """Create a TwilioMessageSource with a mocked Client."""
    with patch("sms_codes.twilio_client.Client"), \
         patch("sms_codes.twilio_client.TwilioHttpClient"):
        return TwilioMessageSource("ACtest123", "test_token_456")


def _response(status_code: int = 200, payload: Any = None, text: str = "") -> MagicMock:
    resp = MagicMock(status_code=status_code, reason="", text=text)
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    return resp


class TestTwilioSource:
    def test_list_messages_maps_fields(self) -> None:
        source = _make_twilio()
        sent = datetime(2024, 5, 1, 11, 58, tzinfo=UTC)
        record = MagicMock(sid="SM123", from_="+15559990000", body="code: 485920", date_sent=sent)
        source._client.messages.list = MagicMock(return_value=[record])

        messages = source.list_messages("+15550001111", SINCE, 20)

        assert len(messages) == 1
        msg = messages[0]
        assert msg.provider_id == "SM123"
        assert msg.from_number == "+15559990000"
        assert msg.body == "code: 485920"
        assert msg.sent_at == sent
        kwargs = source._client.messages.list.call_args.kwargs
        assert kwargs == {"to": "+15550001111", "date_sent_after": SINCE, "limit": 20}

    def test_missing_fields_stay_empty(self) -> None:
        source = _make_twilio()
        record = MagicMock(sid="SM1", from_=None, body=None, date_sent=None)
        source._client.messages.list = MagicMock(return_value=[record])

        msg = source.list_messages("+15550001111", SINCE, 20)[0]

        assert msg.from_number is None
        assert msg.body is None
        assert msg.sent_at is None

    def test_auth_error_is_classified(self) -> None:
        source = _make_twilio()
        source._client.messages.list = MagicMock(
            side_effect=TwilioRestException(
                401, "https://api.twilio.com", msg="Authenticate", code=20003
            )
        )

        with pytest.raises(MessageSourceError) as excinfo:
            source.list_messages("+15550001111", SINCE, 20)

        assert excinfo.value.status_code == 401
        assert classify_error(excinfo.value) is ErrorKind.AUTH

    def test_rate_limit_is_classified(self) -> None:
        source = _make_twilio()
        source._client.messages.list = MagicMock(
            side_effect=TwilioRestException(429, "https://api.twilio.com", msg="Too Many Requests")
        )

        with pytest.raises(MessageSourceError) as excinfo:
            source.list_messages("+15550001111", SINCE, 20)

        assert classify_error(excinfo.value) is ErrorKind.RATE_LIMITED

    def test_malformed_record_is_skipped(self) -> None:
        source = _make_twilio()
        bad = MagicMock(sid="SM-bad", from_="+15559990000", body=["not", "text"], date_sent=None)
        good = MagicMock(sid="SM-good", from_="+15559990000", body="code: 4821", date_sent=None)
        source._client.messages.list = MagicMock(return_value=[bad, good])

        messages = source.list_messages("+15550001111", SINCE, 20)

        assert [m.provider_id for m in messages] == ["SM-good"]

    def test_network_error_is_wrapped(self) -> None:
        source = _make_twilio()
        source._client.messages.list = MagicMock(side_effect=ConnectionError("timeout"))

        with pytest.raises(MessageSourceError, match="timeout") as excinfo:
            source.list_messages("+15550001111", SINCE, 20)

        assert classify_error(excinfo.value) is ErrorKind.TRANSIENT

    def test_connection_check_fetches_account(self) -> None:
        source = _make_twilio()
        source.test_connection()
        source._client.api.accounts.assert_called_once_with("ACtest123")
        source._client.api.accounts.return_value.fetch.assert_called_once()


class TestPlivoSource:
    def _make(self) -> tuple[PlivoMessageSource, requests.Session]:
        session = requests.Session()
        return PlivoMessageSource("MA123", "tok", session=session), session

    def test_uses_basic_auth(self) -> None:
        _, session = self._make()
        assert session.auth == ("MA123", "tok")

    def test_list_messages(self) -> None:
        source, session = self._make()
        payload = {
            "objects": [
                {
                    "message_uuid": "uuid-2",
                    "from_number": "15559990000",
                    "message_time": "2024-05-01 11:59:00+00:00",
                    "text": "Your OTP is 4321",
                },
                {"message_uuid": "uuid-1", "from_number": "+15558880000"},
            ]
        }
        with patch.object(session, "request", return_value=_response(payload=payload)) as req:
            messages = source.list_messages("+15550001111", SINCE, 20)

        args, kwargs = req.call_args
        assert args == ("GET", "https://api.plivo.com/v1/Account/MA123/Message/")
        assert kwargs["params"] == {
            "message_direction": "inbound",
            "to_number": "15550001111",
            "message_time__gte": "2024-05-01 11:55:00",
            "limit": 20,
        }
        assert kwargs["timeout"] == 10.0
        assert [m.provider_id for m in messages] == ["uuid-2", "uuid-1"]
        assert messages[0].from_number == "+15559990000"
        assert messages[0].body == "Your OTP is 4321"
        assert messages[0].sent_at == "2024-05-01 11:59:00+00:00"
        assert messages[1].body is None

    def test_http_error_carries_status(self) -> None:
        source, session = self._make()
        with patch.object(session, "request", return_value=_response(401, text="unauthorized")):
            with pytest.raises(MessageSourceError) as excinfo:
                source.test_connection()

        assert excinfo.value.status_code == 401
        assert classify_error(excinfo.value) is ErrorKind.AUTH

    def test_malformed_record_is_skipped(self) -> None:
        source, session = self._make()
        payload = {
            "objects": [
                {"message_uuid": "uuid-bad", "text": {"nested": 1}},
                {"message_uuid": "uuid-good", "from_number": "15559990000", "text": "code 4821"},
            ]
        }
        with patch.object(session, "request", return_value=_response(payload=payload)):
            messages = source.list_messages("+15550001111", SINCE, 20)

        assert [m.provider_id for m in messages] == ["uuid-good"]
        assert messages[0].body == "code 4821"

    def test_transport_error(self) -> None:
        source, session = self._make()
        with patch.object(session, "request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(MessageSourceError, match="refused") as excinfo:
                source.list_messages("+15550001111", SINCE, 20)

        assert excinfo.value.status_code is None


class TestGatewaySource:
    def _make(self) -> tuple[GatewayMessageSource, requests.Session]:
        session = requests.Session()
        source = GatewayMessageSource("http://modem.local:8080/", "tok", session=session)
        return source, session

    def test_bearer_token(self) -> None:
        _, session = self._make()
        assert session.headers["Authorization"] == "Bearer tok"

    def test_connection_check_hits_modem(self) -> None:
        source, session = self._make()
        with patch.object(session, "request", return_value=_response(payload={"imei": "1"})) as req:
            source.test_connection()
        assert req.call_args.args == ("GET", "http://modem.local:8080/api/modem")

    @pytest.mark.parametrize("wrap", [False, True])
    def test_list_messages(self, wrap: bool) -> None:
        source, session = self._make()
        items = [
            {"id": 17, "from": "+15559990000", "text": "PIN 9021", "timestamp": "2024-05-01T11:59:00Z"},
            {"message_id": "m-16", "sender": "+15558880000", "body": "hello"},
        ]
        payload = {"messages": items} if wrap else items
        with patch.object(session, "request", return_value=_response(payload=payload)) as req:
            messages = source.list_messages("+15550001111", SINCE, 50)

        assert req.call_args.args == ("GET", "http://modem.local:8080/api/messages")
        assert req.call_args.kwargs["params"] == {
            "to": "+15550001111",
            "since": "2024-05-01T11:55:00+00:00",
            "limit": 50,
        }
        assert [m.provider_id for m in messages] == ["17", "m-16"]
        assert messages[0].body == "PIN 9021"
        assert messages[1].from_number == "+15558880000"
        assert messages[1].body == "hello"

    def test_malformed_record_is_skipped(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        source, session = self._make()
        payload = [{"id": "bad", "text": {"nested": 1}}, {"id": "good", "text": "code 4821"}]
        with patch.object(session, "request", return_value=_response(payload=payload)):
            messages = source.list_messages("+15550001111", SINCE, 50)

        assert [m.provider_id for m in messages] == ["good"]
        assert messages[0].body == "code 4821"
        assert "Skipping malformed gateway message" in caplog.text

    def test_empty_body(self) -> None:
        source, session = self._make()
        with patch.object(session, "request", return_value=_response(payload=None)):
            assert source.list_messages("+15550001111", SINCE, 50) == []

    def test_unexpected_payload(self) -> None:
        source, session = self._make()
        with patch.object(session, "request", return_value=_response(payload="nope")):
            with pytest.raises(MessageSourceError):
                source.list_messages("+15550001111", SINCE, 50)


def test_build_message_source_per_provider() -> None:
    plivo = build_message_source(ProviderConfig("plivo", "+1555", "MA123", "tok"))
    gateway = build_message_source(ProviderConfig("gateway", "+1555", "http://modem", "tok"))
    with patch("sms_codes.twilio_client.Client"), \
         patch("sms_codes.twilio_client.TwilioHttpClient"):
        twilio = build_message_source(ProviderConfig("twilio", "+1555", "AC1", "tok"))

    assert isinstance(plivo, PlivoMessageSource)
    assert isinstance(gateway, GatewayMessageSource)
    assert isinstance(twilio, TwilioMessageSource)
