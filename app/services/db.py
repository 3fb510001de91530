"""
Queue persistence helpers — the store operations the pipeline consumes.

Inserts and lead writes never commit; callers own the transaction boundary so
a sub-batch of leads (or one task) succeeds or rolls back together. The claim
and single-task finish helpers commit immediately so the claim is visible to
overlapping sweeps. Every status write is conditional on the current status.
"""
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update, func, exists, and_

from app.models.batch import AiBatch, BatchStatus
from app.models.lead import LeadRecord
from app.models.task import Task, TaskStatus, TaskType, transition_task


# ── Bulk inserts ─────────────────────────────────────────────────────────────

def bulk_insert_leads(session, rows: Sequence[Dict]) -> List[LeadRecord]:
    """INSERT all lead rows in one flush; returned objects carry their new ids."""
    leads = [LeadRecord(**row) for row in rows]
    session.add_all(leads)
    session.flush()
    return leads


def bulk_insert_tasks(session, rows: Sequence[Dict]) -> List[Task]:
    tasks = [Task(**row) for row in rows]
    session.add_all(tasks)
    session.flush()
    return tasks


def map_ids_by_email(leads: Iterable[LeadRecord]) -> Dict[str, int]:
    """lead_email → id for freshly inserted rows (first row wins on duplicates)."""
    mapping = {}
    for lead in leads:
        mapping.setdefault(lead.lead_email, lead.id)
    return mapping


# ── Claiming ─────────────────────────────────────────────────────────────────

def select_queue_candidates(session, limit: int) -> List[Task]:
    """
    Tasks in pending/processing, priority desc then created_at asc.

    Processing rows that already carry a batch handle are owned by their batch
    and are excluded.
    """
    stmt = (
        select(Task)
        .where(
            (Task.status == TaskStatus.PENDING)
            | and_(Task.status == TaskStatus.PROCESSING, Task.batch_handle.is_(None))
        )
        .order_by(Task.priority.desc(), Task.created_at.asc(), Task.id.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def claim_task(session, task_id: int, now: datetime = None) -> bool:
    """pending → processing, only if still pending. Commits on success."""
    won = transition_task(
        session, task_id, TaskStatus.PENDING, TaskStatus.PROCESSING,
        started_at=now or datetime.now(),
    )
    session.commit()
    return won


def complete_task(session, task_id: int) -> bool:
    won = transition_task(
        session, task_id, TaskStatus.PROCESSING, TaskStatus.COMPLETED,
        completed_at=datetime.now(),
    )
    session.commit()
    return won


def fail_task(session, task_id: int, error: str) -> bool:
    won = transition_task(
        session, task_id, TaskStatus.PROCESSING, TaskStatus.FAILED,
        completed_at=datetime.now(), error_message=str(error)[:1000],
    )
    session.commit()
    return won


def fail_abandoned_claim(session, task: Task) -> bool:
    """
    Fail a processing task that never got a batch handle (its claimer died).

    Conditional on the exact started_at we observed, so a live claimer that
    re-stamped the row is never clobbered. An abandoned ai_intent task closes
    out its lead with a null score in the same commit.
    """
    won = transition_task(
        session, task.id, TaskStatus.PROCESSING, TaskStatus.FAILED,
        extra_where=(Task.batch_handle.is_(None), Task.started_at == task.started_at),
        completed_at=datetime.now(),
        error_message='Abandoned claim: processing without batch handle past stale threshold',
    )
    if won and task.task_type == TaskType.AI_INTENT and task.lead_id is not None:
        record_intent(session, task.lead_id, None)
    session.commit()
    return won


# ── Batches ──────────────────────────────────────────────────────────────────

def processing_batches(session) -> List[AiBatch]:
    stmt = (
        select(AiBatch)
        .where(AiBatch.status == BatchStatus.PROCESSING)
        .order_by(AiBatch.created_at.asc())
    )
    return list(session.execute(stmt).scalars())


def attach_batch_handle(session, task_ids: Sequence[int], batch_handle: str) -> int:
    """Stamp the handle on tasks that are still processing. Does not commit."""
    stmt = (
        update(Task)
        .where(Task.id.in_(list(task_ids)), Task.status == TaskStatus.PROCESSING)
        .values(batch_handle=batch_handle)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount


# ── Lead writes ──────────────────────────────────────────────────────────────

def record_intent(session, lead_id: int, score: Optional[int]) -> bool:
    """Write the AI outcome once: only leads not yet processed are touched."""
    stmt = (
        update(LeadRecord)
        .where(LeadRecord.id == lead_id, LeadRecord.processed.is_(False))
        .values(intent=score, processed=True, updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def update_parsed_conversation(session, lead_id: int, parsed: Dict) -> bool:
    stmt = (
        update(LeadRecord)
        .where(LeadRecord.id == lead_id)
        .values(parsed_conversation=parsed, updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


# ── Reconciliation / stats ───────────────────────────────────────────────────

def leads_missing_intent_task(session, older_than: datetime, limit: int = 500) -> List[LeadRecord]:
    """Unprocessed leads with no ai_intent task at all (lead insert won, task insert lost)."""
    has_task = exists().where(
        Task.lead_id == LeadRecord.id,
        Task.task_type == TaskType.AI_INTENT,
    )
    stmt = (
        select(LeadRecord)
        .where(LeadRecord.processed.is_(False), LeadRecord.created_at < older_than, ~has_task)
        .order_by(LeadRecord.created_at.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def queue_stats(session, stale_after_hours: int) -> Dict:
    counts = dict(session.execute(
        select(Task.status, func.count(Task.id)).group_by(Task.status)
    ).all())
    cutoff = datetime.now() - timedelta(hours=stale_after_hours)
    open_batches = session.execute(
        select(func.count()).select_from(AiBatch).where(AiBatch.status == BatchStatus.PROCESSING)
    ).scalar_one()
    stale = session.execute(
        select(AiBatch.batch_handle)
        .where(AiBatch.status == BatchStatus.PROCESSING, AiBatch.created_at < cutoff)
    ).scalars().all()
    return {
        'tasks': {status.value: counts.get(status, 0) for status in TaskStatus},
        'open_batches': open_batches,
        'stale_batches': list(stale),
    }
