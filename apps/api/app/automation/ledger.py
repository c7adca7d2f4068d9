from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.automation.models import AutomationLedgerEntry, utcnow


class LedgerUnavailableError(RuntimeError):
    pass


class LedgerConflictError(RuntimeError):
    pass


@dataclass
class _EntityLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class EntityLockRegistry:
    """Per (tenant, rule, entity) mutual exclusion.

    Locks are created on first use and dropped once no caller holds or waits
    on them, so the registry only grows with concurrent activity.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str, str], _EntityLock] = {}

    @contextmanager
    def hold(self, tenant_id: str, rule_id: uuid.UUID | str, entity_id: str) -> Iterator[None]:
        key = (tenant_id, str(rule_id), entity_id)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _EntityLock()
                self._locks[key] = entry
            entry.refs += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    self._locks.pop(key, None)

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


class ConstraintLedger:
    def get(
        self,
        session: Session,
        tenant_id: str,
        rule_id: uuid.UUID,
        entity_id: str,
        *,
        fresh: bool = False,
    ) -> AutomationLedgerEntry | None:
        stmt = select(AutomationLedgerEntry).where(
            and_(
                AutomationLedgerEntry.tenant_id == tenant_id,
                AutomationLedgerEntry.rule_id == rule_id,
                AutomationLedgerEntry.entity_id == entity_id,
            )
        )
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        try:
            return session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"constraint ledger unavailable: {exc}") from exc

    def record_fire(
        self,
        session: Session,
        tenant_id: str,
        rule_id: uuid.UUID,
        entity_id: str,
        fired_at: datetime,
        expected_version: int | None,
    ) -> AutomationLedgerEntry:
        """Consume one fire for (rule, entity).

        ``expected_version`` is the ``row_version`` observed when the gate was
        checked, or ``None`` when no entry existed. A concurrent writer makes
        this raise ``LedgerConflictError`` after rolling the session back.
        """
        if expected_version is None:
            entry = AutomationLedgerEntry(
                tenant_id=tenant_id,
                rule_id=rule_id,
                entity_id=entity_id,
                last_fired_at=fired_at,
                fire_count=1,
                row_version=1,
            )
            session.add(entry)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise LedgerConflictError("ledger entry created concurrently") from exc
            return entry

        result = session.execute(
            update(AutomationLedgerEntry)
            .where(
                and_(
                    AutomationLedgerEntry.tenant_id == tenant_id,
                    AutomationLedgerEntry.rule_id == rule_id,
                    AutomationLedgerEntry.entity_id == entity_id,
                    AutomationLedgerEntry.row_version == expected_version,
                )
            )
            .values(
                last_fired_at=fired_at,
                fire_count=AutomationLedgerEntry.fire_count + 1,
                row_version=AutomationLedgerEntry.row_version + 1,
                updated_at=utcnow(),
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise LedgerConflictError("row_version conflict")

        entry = self.get(session, tenant_id, rule_id, entity_id, fresh=True)
        if entry is None:
            session.rollback()
            raise LedgerConflictError("ledger entry disappeared")
        return entry
