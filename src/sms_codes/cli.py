from __future__ import annotations

import argparse
import sys

from .config import get_settings
from .errors import ConfigError
from .logging_config import setup_logging
from .storage import SmsStore, open_store


def _format_str(value: str | None, width: int = 60) -> str:
    """Single-line, truncated text for display."""
    if value is None:
        return ""
    text = " ".join(value.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def print_recent(store: SmsStore, limit: int) -> None:
    """Print recent messages, newest first, with their extracted codes."""
    rows = store.recent_messages(limit)
    if not rows:
        print("No SMS messages stored.")
        return

    for sms, codes in rows:
        print("-" * 80)
        print(f"{sms.created_at:%Y-%m-%d %H:%M:%S} | to={sms.phone_number} | from={sms.from_number}")
        print(f"  {_format_str(sms.body_text)}")
        for code in codes:
            state = "used" if code.used else "unused"
            print(f"  code: {code.code} ({state})")


def serve() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    try:
        # Fail fast with a readable message instead of a lifespan traceback.
        settings.provider_config()
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    uvicorn.run(
        "sms_codes.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="sms-codes")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="run the HTTP API and the SMS poller")

    recent = sub.add_parser("recent", help="print recently stored messages")
    recent.add_argument("--limit", type=int, default=20)

    prune = sub.add_parser("prune", help="delete messages past the retention window")
    prune.add_argument("--days", type=int, default=None)

    args = parser.parse_args(argv)

    if args.command == "serve":
        serve()
        return

    settings = get_settings()
    store = open_store(settings.database_url)
    if args.command == "recent":
        print_recent(store, max(1, args.limit))
    elif args.command == "prune":
        days = args.days if args.days is not None else settings.retention_days
        deleted = store.prune_older_than(days)
        print(f"Deleted {deleted} messages older than {days} days.")


if __name__ == "__main__":
    main()
