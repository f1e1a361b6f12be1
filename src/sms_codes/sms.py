from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class RawMessage(BaseModel):
    """
    An inbound SMS as reported by a carrier backend.

    Every field is optional: carriers omit things, and the pipeline fills in
    fallbacks when it normalizes the message.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True)

    provider_id: str | None = None
    from_number: str | None = None
    body: str | None = None
    sent_at: datetime | str | None = None


def normalize_sender_number(number: str) -> str:
    """Prefix a bare-digit sender number with "+" (E.164 style)."""
    number = number.strip()
    return number if number.startswith("+") else f"+{number}"
