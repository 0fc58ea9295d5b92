"""Local placement queue: insert, unsynced queries, sync bookkeeping, cleanup."""

import logging
from collections.abc import Iterable

from sqlalchemy import func
from sqlmodel import Session, select

from tagplace.store.models import PlacementRecord

logger = logging.getLogger(__name__)


def insert(session: Session, record: PlacementRecord) -> int:
    """Persist a new record. Returns its surrogate id."""
    session.add(record)
    session.commit()
    session.refresh(record)
    assert record.id is not None
    return record.id


def update(session: Session, record: PlacementRecord) -> PlacementRecord:
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def get_record(session: Session, record_id: int) -> PlacementRecord | None:
    return session.get(PlacementRecord, record_id)


def query_unsynced(session: Session, owner_id: str | None = None) -> list[PlacementRecord]:
    """Unsynced records in insertion order, optionally for a single owner."""
    stmt = select(PlacementRecord).where(PlacementRecord.synced == False)  # noqa: E712
    if owner_id is not None:
        stmt = stmt.where(PlacementRecord.owner_id == owner_id)
    stmt = stmt.order_by(PlacementRecord.id)  # type: ignore[arg-type]
    return list(session.exec(stmt).all())


def query_unsynced_count(session: Session) -> int:
    stmt = (
        select(func.count())
        .select_from(PlacementRecord)
        .where(PlacementRecord.synced == False)  # noqa: E712
    )
    return session.exec(stmt).one()


def mark_synced(session: Session, record_ids: Iterable[int]) -> int:
    """Flag the given records as synced. Returns how many were updated."""
    ids = list(record_ids)
    if not ids:
        return 0
    records = session.exec(
        select(PlacementRecord).where(PlacementRecord.id.in_(ids))  # type: ignore[union-attr]
    ).all()
    for record in records:
        record.synced = True
        session.add(record)
    session.commit()
    return len(records)


def delete_synced(session: Session) -> int:
    """Prune records the remote has confirmed. Returns the number removed."""
    stmt = select(PlacementRecord).where(PlacementRecord.synced == True)  # noqa: E712
    records = session.exec(stmt).all()
    for record in records:
        session.delete(record)
    session.commit()
    return len(records)


def delete_all(session: Session) -> int:
    """Operator reset: drop every local record, synced or not."""
    records = session.exec(select(PlacementRecord)).all()
    for record in records:
        session.delete(record)
    session.commit()
    logger.info("Deleted all %d local placement records", len(records))
    return len(records)


def delete_for_owner(session: Session, owner_id: str) -> int:
    """Drop every local record belonging to one owner."""
    stmt = select(PlacementRecord).where(PlacementRecord.owner_id == owner_id)
    records = session.exec(stmt).all()
    for record in records:
        session.delete(record)
    session.commit()
    logger.info("Deleted %d local placement records for %s", len(records), owner_id)
    return len(records)


def list_placements(session: Session, limit: int = 100) -> list[PlacementRecord]:
    """Most recent local records first."""
    stmt = (
        select(PlacementRecord)
        .order_by(PlacementRecord.id.desc())  # type: ignore[union-attr]
        .limit(limit)
    )
    return list(session.exec(stmt).all())
