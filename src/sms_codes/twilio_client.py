from __future__ import annotations

import logging
from datetime import datetime

from twilio.base.exceptions import TwilioRestException  # type: ignore[import-untyped]
from twilio.http.http_client import TwilioHttpClient  # type: ignore[import-untyped]
from twilio.rest import Client  # type: ignore[import-untyped]

from .errors import MessageSourceError
from .sms import RawMessage
from .sources import map_records

logger = logging.getLogger(__name__)


class TwilioMessageSource:
    """Lists inbound SMS through the Twilio REST API."""

    def __init__(self, account_sid: str, auth_token: str, timeout: float = 10.0) -> None:
        self._account_sid = account_sid
        http_client = TwilioHttpClient(timeout=timeout)
        self._client = Client(account_sid, auth_token, http_client=http_client)

    def test_connection(self) -> None:
        try:
            self._client.api.accounts(self._account_sid).fetch()
        except TwilioRestException as exc:
            raise _to_source_error(exc) from exc
        except Exception as exc:
            raise MessageSourceError(f"Twilio connection check failed: {exc}") from exc

    def list_messages(self, destination: str, since: datetime, limit: int) -> list[RawMessage]:
        try:
            records = self._client.messages.list(
                to=destination,
                date_sent_after=since,
                limit=limit,
            )
        except TwilioRestException as exc:
            raise _to_source_error(exc) from exc
        except Exception as exc:
            raise MessageSourceError(f"Twilio message listing failed: {exc}") from exc

        return map_records(records, _to_raw_message, "Twilio")


def _to_raw_message(record: object) -> RawMessage:
    return RawMessage(
        provider_id=getattr(record, "sid", None),
        from_number=getattr(record, "from_", None),
        body=getattr(record, "body", None),
        sent_at=getattr(record, "date_sent", None),
    )


def _to_source_error(exc: TwilioRestException) -> MessageSourceError:
    logger.debug("Twilio API error: status=%s code=%s msg=%s", exc.status, exc.code, exc.msg)
    return MessageSourceError(
        f"Twilio API error: {exc.msg}",
        status_code=exc.status,
        code=exc.code,
    )
