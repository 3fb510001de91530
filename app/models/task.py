"""
Task model — one row per unit of deferred work in the processing queue.

Status is an explicit state machine. Every status write goes through
`transition_task()`, which validates the move against TRANSITIONS and applies
it as a conditional UPDATE keyed by id + expected prior status, so two
overlapping scheduler runs can never both win the same row.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, Text, DateTime, JSON, Enum, Index, update

from app.database import Base


class TaskType(str, enum.Enum):
    AI_INTENT = 'ai_intent'
    PLAN_CHECK = 'plan_check'
    CONVERSATION_PARSE = 'conversation_parse'
    LEAD_SYNC = 'lead_sync'


class TaskStatus(str, enum.Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when code asks for a status move the state machine forbids."""
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Task status cannot move {current.value} → {target.value}")


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Task(Base):
    __tablename__ = 'processing_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(Enum(TaskType, native_enum=False, length=32, values_callable=_values), nullable=False)
    payload = Column(JSON, default=dict)
    status = Column(
        Enum(TaskStatus, native_enum=False, length=16, values_callable=_values),
        nullable=False, default=TaskStatus.PENDING,
    )
    priority = Column(Integer, nullable=False, default=1)
    brand_id = Column(Integer, nullable=True)
    lead_id = Column(Integer, nullable=True)
    batch_handle = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.now, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_processing_queue_claim', 'status', 'priority', 'created_at'),
        Index('ix_processing_queue_lead_id', 'lead_id'),
    )

    def __repr__(self):
        return f'<Task {self.id} {self.task_type.value} {self.status.value}>'


def check_transition(current, target):
    """Raise InvalidTransition unless current → target is in the table."""
    current = TaskStatus(current)
    target = TaskStatus(target)
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target)


def transition_task(session, task_id, expected, target, extra_where=(), **values):
    """
    Conditionally move one task from `expected` to `target`.

    Returns True when this caller won the row, False when the row was no
    longer in `expected` (another invocation got there first). Does not
    commit.
    """
    check_transition(expected, target)
    stmt = (
        update(Task)
        .where(Task.id == task_id, Task.status == TaskStatus(expected), *extra_where)
        .values(status=TaskStatus(target), **values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def transition_tasks(session, task_ids, expected, target, **values):
    """Bulk form of transition_task(). Returns the number of rows moved."""
    if not task_ids:
        return 0
    check_transition(expected, target)
    stmt = (
        update(Task)
        .where(Task.id.in_(list(task_ids)), Task.status == TaskStatus(expected))
        .values(status=TaskStatus(target), **values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount
