from __future__ import annotations

import re
from typing import Final

MIN_CODE_DIGITS: Final[int] = 4
MAX_CODE_DIGITS: Final[int] = 8

KEYWORDS: Final[tuple[str, ...]] = ("code", "2fa", "verification", "verify", "pin", "otp")

# Tried in this order; the first pattern with any match wins.
# The bare-digit fallbacks run 6, 4, then 5 digits. That order is kept as it
# has always been, not sorted by length.
CODE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    *(re.compile(rf"{keyword}[:\s]*(\d{{4,8}})", re.IGNORECASE) for keyword in KEYWORDS),
    re.compile(r"\b(\d{6})\b"),
    re.compile(r"\b(\d{4})\b"),
    re.compile(r"\b(\d{5})\b"),
)

_NON_DIGIT_RE = re.compile(r"\D")


def extract_code(body_text: str | None) -> str | None:
    """
    Pull a one-time passcode out of an SMS body.

    Keyword-anchored patterns ("code: 485920", "OTP 1234") win over bare digit
    runs. Only the first match of the first matching pattern is considered,
    so at most one code comes out of a message.
    """
    if not body_text:
        return None

    for pattern in CODE_PATTERNS:
        match = pattern.search(body_text)
        if match is None:
            continue
        # Every digit of the whole match counts, keyword digits included:
        # "2fa 123456" gives 2123456, and "2fa 12345678" is too long.
        code = _NON_DIGIT_RE.sub("", match.group(0))
        if MIN_CODE_DIGITS <= len(code) <= MAX_CODE_DIGITS:
            return code
    return None
