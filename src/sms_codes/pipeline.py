from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Final

from .db import utcnow
from .extractor import extract_code
from .sms import RawMessage
from .storage import NewMessage, SmsStore

logger = logging.getLogger(__name__)

UNKNOWN_SENDER: Final[str] = "unknown"
LOG_BODY_CHARS: Final[int] = 50


def normalize_message(
    raw: RawMessage, destination: str, now: datetime | None = None
) -> NewMessage:
    """
    Turn a carrier message into a storable one.

    Fallbacks for missing fields:
    - sender -> "unknown"
    - body -> ""
    - sent time -> now
    - provider id -> a fresh id, so the message is still stored
    """
    if now is None:
        now = utcnow()

    sent_at = raw.sent_at
    if isinstance(sent_at, datetime):
        date_sent = sent_at.isoformat()
    elif sent_at:
        date_sent = str(sent_at)
    else:
        date_sent = now.isoformat()

    provider_id = raw.provider_id
    if not provider_id:
        provider_id = str(uuid.uuid4())
        logger.warning("Message without provider id; stored under generated id %s", provider_id)

    return NewMessage(
        id=str(uuid.uuid4()),
        phone_number=destination,
        from_number=raw.from_number or UNKNOWN_SENDER,
        body_text=raw.body or "",
        date_sent=date_sent,
        message_sid=provider_id,
    )


@dataclass
class BatchResult:
    inserted: int = 0
    duplicates: int = 0
    codes: int = 0
    failed: int = 0


def process_message(store: SmsStore, destination: str, raw: RawMessage) -> tuple[bool, str | None]:
    """
    Store one message and, if it is new, extract and store its code.

    Returns (newly_inserted, code). A duplicate is never re-extracted, so a
    provider message yields at most one code.
    """
    sms = normalize_message(raw, destination)

    if not store.insert_message(sms):
        return False, None

    logger.info("New SMS from %s: %s", sms.from_number, sms.body_text[:LOG_BODY_CHARS])

    code = extract_code(sms.body_text)
    if code is not None:
        store.insert_code(sms.id, code)
        logger.info("Code extracted from %s: %s", sms.from_number, code)
    return True, code


def process_batch(
    store: SmsStore, destination: str, messages: Iterable[RawMessage]
) -> BatchResult:
    """
    Process messages in the given order.

    A message that fails to normalize or store is logged and skipped; the rest
    of the batch still goes through.
    """
    result = BatchResult()
    for raw in messages:
        try:
            inserted, code = process_message(store, destination, raw)
        except Exception:
            result.failed += 1
            logger.exception("Error processing SMS %s", getattr(raw, "provider_id", None))
            continue

        if not inserted:
            result.duplicates += 1
            continue
        result.inserted += 1
        if code is not None:
            result.codes += 1
    return result
