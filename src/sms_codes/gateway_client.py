from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import requests

from .errors import MessageSourceError
from .sources import map_records, request_json
from .sms import RawMessage


class GatewayMessageSource:
    """
    Lists inbound SMS from a proxy/modem gateway service.

    The gateway exposes:
    - GET /api/modem: modem metadata, used as the connection check
    - GET /api/messages?to=&since=&limit=: received messages, either a JSON
      list or {"messages": [...]}
    Requests carry the API token as a bearer token.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["Authorization"] = f"Bearer {api_token}"

    def test_connection(self) -> None:
        request_json(self._session, "GET", f"{self._base_url}/api/modem", self._timeout)

    def list_messages(self, destination: str, since: datetime, limit: int) -> list[RawMessage]:
        params = {
            "to": destination,
            "since": since.astimezone(UTC).isoformat(),
            "limit": limit,
        }
        data = request_json(
            self._session, "GET", f"{self._base_url}/api/messages", self._timeout, params=params
        )
        if isinstance(data, dict):
            data = data.get("messages")
        if data is None:
            return []
        if not isinstance(data, list):
            raise MessageSourceError("Gateway message listing returned an unexpected payload")
        items = [item for item in data if isinstance(item, dict)]
        return map_records(items, _to_raw_message, "gateway")


def _to_raw_message(item: dict[str, Any]) -> RawMessage:
    provider_id = item.get("id") or item.get("message_id")
    return RawMessage(
        provider_id=str(provider_id) if provider_id is not None else None,
        from_number=item.get("from") or item.get("sender"),
        body=item.get("text") or item.get("body"),
        sent_at=item.get("timestamp") or item.get("date"),
    )
