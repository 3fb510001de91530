"""
AiBatch model — one row per external Message Batches submission.

The row is the only thing that carries multi-minute work across scheduler
invocations: it is written when a submission succeeds and flipped to
completed once its results have been reconciled.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, Text, DateTime, JSON, Enum, update

from app.database import Base


class BatchStatus(str, enum.Enum):
    PROCESSING = 'processing'
    COMPLETED = 'completed'


class AiBatch(Base):
    __tablename__ = 'ai_batches'

    batch_handle = Column(Text, primary_key=True)
    status = Column(
        Enum(BatchStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=BatchStatus.PROCESSING,
    )
    brand_id = Column(Integer, nullable=True)
    task_ids = Column(JSON, nullable=False, default=list)   # ordered
    lead_ids = Column(JSON, nullable=False, default=list)   # parallel to task_ids, may hold nulls
    created_at = Column(DateTime(timezone=True), default=datetime.now, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f'<AiBatch {self.batch_handle} {self.status.value} tasks={len(self.task_ids or [])}>'


def complete_batch(session, batch_handle):
    """processing → completed, conditional. Returns True if this caller moved it."""
    stmt = (
        update(AiBatch)
        .where(AiBatch.batch_handle == batch_handle, AiBatch.status == BatchStatus.PROCESSING)
        .values(status=BatchStatus.COMPLETED, completed_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1
