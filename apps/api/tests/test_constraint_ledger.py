from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation import models  # noqa: F401
from app.automation.ledger import ConstraintLedger, EntityLockRegistry, LedgerConflictError
from app.core.database import Base


FIRED_AT = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def test_record_fire_creates_then_increments(db_session: Session) -> None:
    ledger = ConstraintLedger()
    rule_id = uuid.uuid4()

    created = ledger.record_fire(db_session, "tenant-a", rule_id, "lead-1", FIRED_AT, None)
    db_session.commit()
    assert created.fire_count == 1
    assert created.row_version == 1

    updated = ledger.record_fire(
        db_session,
        "tenant-a",
        rule_id,
        "lead-1",
        FIRED_AT + timedelta(hours=2),
        expected_version=1,
    )
    db_session.commit()

    assert updated.fire_count == 2
    assert updated.row_version == 2
    assert updated.last_fired_at.replace(tzinfo=timezone.utc) == FIRED_AT + timedelta(hours=2)


def test_entries_are_scoped_by_tenant_rule_and_entity(db_session: Session) -> None:
    ledger = ConstraintLedger()
    rule_id = uuid.uuid4()

    ledger.record_fire(db_session, "tenant-a", rule_id, "lead-1", FIRED_AT, None)
    db_session.commit()

    assert ledger.get(db_session, "tenant-a", rule_id, "lead-1") is not None
    assert ledger.get(db_session, "tenant-b", rule_id, "lead-1") is None
    assert ledger.get(db_session, "tenant-a", rule_id, "lead-2") is None
    assert ledger.get(db_session, "tenant-a", uuid.uuid4(), "lead-1") is None


def test_stale_row_version_raises_conflict(db_session: Session) -> None:
    ledger = ConstraintLedger()
    rule_id = uuid.uuid4()
    ledger.record_fire(db_session, "tenant-a", rule_id, "job-7", FIRED_AT, None)
    db_session.commit()
    ledger.record_fire(db_session, "tenant-a", rule_id, "job-7", FIRED_AT + timedelta(minutes=5), 1)
    db_session.commit()

    with pytest.raises(LedgerConflictError):
        ledger.record_fire(db_session, "tenant-a", rule_id, "job-7", FIRED_AT + timedelta(minutes=9), 1)

    entry = ledger.get(db_session, "tenant-a", rule_id, "job-7")
    assert entry is not None
    assert entry.fire_count == 2


def test_concurrent_first_fire_raises_conflict(db_session: Session) -> None:
    ledger = ConstraintLedger()
    rule_id = uuid.uuid4()
    ledger.record_fire(db_session, "tenant-a", rule_id, "invoice-3", FIRED_AT, None)
    db_session.commit()

    with pytest.raises(LedgerConflictError):
        ledger.record_fire(db_session, "tenant-a", rule_id, "invoice-3", FIRED_AT, None)


def test_entity_lock_serializes_holders_and_is_released() -> None:
    locks = EntityLockRegistry()
    rule_id = uuid.uuid4()
    order: list[str] = []
    first_inside = threading.Event()

    def first() -> None:
        with locks.hold("tenant-a", rule_id, "lead-1"):
            order.append("first-start")
            first_inside.set()
            time.sleep(0.05)
            order.append("first-end")

    def second() -> None:
        first_inside.wait(timeout=1)
        with locks.hold("tenant-a", rule_id, "lead-1"):
            order.append("second")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2)

    assert order == ["first-start", "first-end", "second"]
    assert locks.active_count() == 0


def test_entity_locks_do_not_block_other_entities() -> None:
    locks = EntityLockRegistry()
    rule_id = uuid.uuid4()

    with locks.hold("tenant-a", rule_id, "lead-1"):
        acquired = threading.Event()

        def other() -> None:
            with locks.hold("tenant-a", rule_id, "lead-2"):
                acquired.set()

        thread = threading.Thread(target=other)
        thread.start()
        thread.join(timeout=1)

        assert acquired.is_set()
        assert locks.active_count() == 1

    assert locks.active_count() == 0
