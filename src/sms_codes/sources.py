"""Carrier backends that list inbound SMS for the monitored number."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Protocol, TypeVar

import requests
from pydantic import ValidationError

from .config import ProviderConfig
from .errors import ConfigError, MessageSourceError
from .sms import RawMessage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

T = TypeVar("T")


class MessageSource(Protocol):
    """Interface that all carrier backends must implement."""

    def test_connection(self) -> None:
        """Cheap call proving the credentials work. Raises MessageSourceError."""
        ...

    def list_messages(
        self, destination: str, since: datetime, limit: int
    ) -> list[RawMessage]:
        """Inbound messages to destination sent at or after since, in provider order."""
        ...


def request_json(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> Any:
    """
    Perform an HTTP call and decode the JSON body.

    Transport failures and HTTP error statuses both become MessageSourceError,
    the latter carrying the status code for error classification.
    """
    try:
        resp = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise MessageSourceError(f"{method} {url} failed: {exc}") from exc

    if resp.status_code >= 400:
        detail = resp.text[:200] if resp.text else resp.reason
        raise MessageSourceError(
            f"{method} {url} returned HTTP {resp.status_code}: {detail}",
            status_code=resp.status_code,
        )

    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as exc:
        raise MessageSourceError(f"{method} {url} returned invalid JSON") from exc


def map_records(
    records: Iterable[T], to_raw: Callable[[T], RawMessage], provider: str
) -> list[RawMessage]:
    """
    Convert carrier records one by one.

    A record that does not fit RawMessage is logged and skipped; the rest of
    the batch is still returned.
    """
    messages: list[RawMessage] = []
    for record in records:
        try:
            messages.append(to_raw(record))
        except ValidationError as exc:
            logger.warning("Skipping malformed %s message: %s", provider, exc)
    return messages


def build_message_source(
    config: ProviderConfig, timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> MessageSource:
    """Create the backend selected by SMS_PROVIDER."""
    if config.provider == "twilio":
        from .twilio_client import TwilioMessageSource

        return TwilioMessageSource(config.account, config.secret, timeout=timeout)
    if config.provider == "plivo":
        from .plivo_client import PlivoMessageSource

        return PlivoMessageSource(config.account, config.secret, timeout=timeout)
    if config.provider == "gateway":
        from .gateway_client import GatewayMessageSource

        return GatewayMessageSource(config.account, config.secret, timeout=timeout)
    raise ConfigError(f"Unknown SMS provider {config.provider!r}")
