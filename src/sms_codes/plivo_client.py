from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import requests

from .errors import MessageSourceError
from .sources import map_records, request_json
from .sms import RawMessage

PLIVO_API_BASE = "https://api.plivo.com/v1"
PLIVO_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class PlivoMessageSource:
    """Lists inbound SMS through the Plivo REST API (basic auth)."""

    def __init__(
        self,
        auth_id: str,
        auth_token: str,
        timeout: float = 10.0,
        base_url: str = PLIVO_API_BASE,
        session: requests.Session | None = None,
    ) -> None:
        self._account_url = f"{base_url.rstrip('/')}/Account/{auth_id}/"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.auth = (auth_id, auth_token)

    def test_connection(self) -> None:
        request_json(self._session, "GET", self._account_url, self._timeout)

    def list_messages(self, destination: str, since: datetime, limit: int) -> list[RawMessage]:
        params = {
            "message_direction": "inbound",
            "to_number": destination.lstrip("+"),
            "message_time__gte": since.astimezone(UTC).strftime(PLIVO_TIME_FORMAT),
            "limit": limit,
        }
        data = request_json(
            self._session, "GET", f"{self._account_url}Message/", self._timeout, params=params
        )
        if not isinstance(data, dict):
            raise MessageSourceError("Plivo message listing returned an unexpected payload")
        return map_records(data.get("objects") or [], _to_raw_message, "Plivo")


def _to_raw_message(obj: dict[str, Any]) -> RawMessage:
    sender = obj.get("from_number") or obj.get("src")
    if sender and not str(sender).startswith("+"):
        # Plivo reports numbers without the leading "+".
        sender = f"+{sender}"
    return RawMessage(
        provider_id=obj.get("message_uuid"),
        from_number=sender,
        body=obj.get("text") or obj.get("message_text"),
        sent_at=obj.get("message_time"),
    )
