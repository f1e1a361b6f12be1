from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, contains_eager, joinedload, sessionmaker

from .db import SmsCode, SmsMessage, init_db, make_engine, make_session_factory, utcnow

logger = logging.getLogger(__name__)

CODE_RE = re.compile(r"^\d{4,8}$")


@dataclass(frozen=True)
class NewMessage:
    """A normalized inbound message, ready to be stored."""

    id: str
    phone_number: str
    from_number: str
    body_text: str
    date_sent: str
    message_sid: str


@dataclass(frozen=True)
class MessageRecord:
    id: str
    phone_number: str
    from_number: str
    body_text: str
    date_sent: str
    message_sid: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: SmsMessage) -> MessageRecord:
        return cls(
            id=row.id,
            phone_number=row.phone_number,
            from_number=row.from_number,
            body_text=row.body_text,
            date_sent=row.date_sent,
            message_sid=row.message_sid,
            created_at=row.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class CodeRecord:
    id: int
    sms_id: str
    code: str
    used: bool
    created_at: datetime
    # copied from the parent message
    body_text: str
    from_number: str

    @classmethod
    def from_row(cls, row: SmsCode) -> CodeRecord:
        return cls(
            id=row.id,
            sms_id=row.sms_id,
            code=row.code,
            used=row.used,
            created_at=row.created_at,
            body_text=row.message.body_text,
            from_number=row.message.from_number,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class SmsStore:
    """
    Persistence for inbound messages and their extracted codes.

    All writes go through one lock, so the "was it newly inserted" answer of
    insert_message and the read-and-consume of the code lookups stay atomic
    for concurrent callers in this process.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._write_lock = threading.Lock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db: Session = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    # --- writes ---

    def insert_message(self, msg: NewMessage) -> bool:
        """
        Insert msg unless its provider id is already stored.

        Returns True when a row was created, False for a duplicate.
        """
        with self._write_lock, self._session() as db:
            existing = db.scalar(
                select(SmsMessage.seq).where(SmsMessage.message_sid == msg.message_sid)
            )
            if existing is not None:
                return False

            db.add(
                SmsMessage(
                    id=msg.id,
                    phone_number=msg.phone_number,
                    from_number=msg.from_number,
                    body_text=msg.body_text,
                    date_sent=msg.date_sent,
                    message_sid=msg.message_sid,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                # Lost a race on the unique provider id: that is a duplicate.
                # Any other constraint failure is a real error.
                duplicate = db.scalar(
                    select(SmsMessage.seq).where(SmsMessage.message_sid == msg.message_sid)
                )
                if duplicate is None:
                    raise
                return False
            return True

    def insert_code(self, message_id: str, code: str) -> int:
        if not CODE_RE.match(code):
            raise ValueError(f"Invalid code {code!r}: expected 4-8 digits")

        with self._write_lock, self._session() as db:
            row = SmsCode(sms_id=message_id, code=code)
            db.add(row)
            db.commit()
            return row.id

    def prune_older_than(self, retention_days: int) -> int:
        """
        Delete messages stored more than retention_days ago, codes first.

        Returns the number of messages removed.
        """
        cutoff = utcnow() - timedelta(days=retention_days)
        with self._write_lock, self._session() as db:
            old_ids = select(SmsMessage.id).where(SmsMessage.created_at < cutoff)
            db.execute(delete(SmsCode).where(SmsCode.sms_id.in_(old_ids)))
            result = db.execute(delete(SmsMessage).where(SmsMessage.created_at < cutoff))
            db.commit()
            deleted = result.rowcount or 0

        logger.info("Cleaned up %s old SMS messages", deleted)
        return deleted

    # --- reads ---

    def get_last_message(self, phone_number: str) -> MessageRecord | None:
        with self._session() as db:
            row = db.scalar(
                select(SmsMessage)
                .where(SmsMessage.phone_number == phone_number)
                .order_by(SmsMessage.seq.desc())
                .limit(1)
            )
            return MessageRecord.from_row(row) if row is not None else None

    def get_last_unused_code(self, phone_number: str) -> CodeRecord | None:
        """Return the newest unused code for phone_number and mark it used."""
        return self._consume_code(phone_number, from_number=None)

    def get_last_unused_code_from(self, phone_number: str, from_number: str) -> CodeRecord | None:
        """Like get_last_unused_code, restricted to one sender."""
        return self._consume_code(phone_number, from_number=from_number)

    def recent_messages(self, limit: int = 20) -> list[tuple[MessageRecord, list[CodeRecord]]]:
        """Newest messages first, each with its codes."""
        with self._session() as db:
            rows = db.scalars(
                select(SmsMessage)
                .options(joinedload(SmsMessage.codes))
                .order_by(SmsMessage.seq.desc())
                .limit(limit)
            ).unique()
            return [
                (MessageRecord.from_row(row), [CodeRecord.from_row(c) for c in row.codes])
                for row in rows
            ]

    def _consume_code(self, phone_number: str, from_number: str | None) -> CodeRecord | None:
        query = (
            select(SmsCode)
            .join(SmsCode.message)
            .options(contains_eager(SmsCode.message))
            .where(SmsMessage.phone_number == phone_number, SmsCode.used == False)  # noqa: E712
        )
        if from_number is not None:
            query = query.where(SmsMessage.from_number == from_number)
        query = query.order_by(SmsCode.created_at.desc(), SmsCode.id.desc()).limit(1)

        # Reading and consuming are one operation: a code is handed out once.
        with self._write_lock, self._session() as db:
            row = db.scalar(query.with_for_update(of=SmsCode))
            if row is None:
                return None
            row.used = True
            db.commit()
            return CodeRecord.from_row(row)


def open_store(database_url: str) -> SmsStore:
    """Create the engine and tables for database_url and wrap them in a store."""
    engine = make_engine(database_url)
    init_db(engine)
    return SmsStore(make_session_factory(engine))
