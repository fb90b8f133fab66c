"""Atomic named counters used for human-facing sequence numbers."""

from sqlalchemy import Column, Integer, String, select, update
from sqlalchemy.orm import Session

from mocflow.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name = Column(String(100), primary_key=True)
    value = Column(Integer, nullable=False, default=0)


def ensure_counter(db: Session, name: str) -> None:
    if db.get(SequenceCounter, name) is None:
        db.add(SequenceCounter(name=name, value=0))
        db.flush()


def next_value(db: Session, name: str) -> int:
    """Increment the counter inside the caller's transaction and return the new value.

    The increment is a single UPDATE, so the row stays write-locked until the
    caller commits or rolls back.
    """
    result = db.execute(
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(value=SequenceCounter.value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(SequenceCounter(name=name, value=1))
        db.flush()
        return 1
    return db.execute(select(SequenceCounter.value).where(SequenceCounter.name == name)).scalar_one()
