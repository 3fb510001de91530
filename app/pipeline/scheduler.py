"""
Queue scheduler — one sweep over the processing queue.

A sweep:
  1. Polls outstanding intent batches (results land before new work starts).
  2. Selects up to QUEUE_FETCH_LIMIT pending/processing tasks,
     priority desc then oldest first.
  3. Fails processing claims that never got a batch handle and have sat
     past CLAIM_STALE_AFTER; other processing rows are left alone.
  4. Claims each pending task (pending → processing, conditional) and either
     runs it now (immediate types) or gathers it for batch submission.
  5. Submits gathered ai_intent tasks, one batch per brand.

Sweeps may overlap (cron + manual trigger); the conditional claim makes each
task belong to exactly one of them.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta

from app.config import BATCHABLE_TASK_TYPES, CLAIM_STALE_AFTER, QUEUE_FETCH_LIMIT
from app.database import get_session
from app.models.task import TaskStatus
from app.pipeline.base import SweepResult, get_handler
from app.pipeline.batches import poll_batches, submit_intent_batch
from app.pipeline.handlers import HANDLERS
from app.services.circuit_breaker import get_breaker
from app.services.db import (
    claim_task, complete_task, fail_abandoned_claim, fail_task, select_queue_candidates,
)

logger = logging.getLogger('pipeline.scheduler')


# ── Lazy RQ queue (avoids import-time Redis connection) ──────────────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from rq import Queue
        from app.extensions import rq_connection
        _queue = Queue('queue-sweep', connection=rq_connection)
    return _queue


def enqueue_sweep():
    """Run a sweep on an RQ worker instead of in the request thread."""
    return _get_queue().enqueue(run_queue_sweep, job_timeout=1800)


# ── Sweep ────────────────────────────────────────────────────────────────────

def is_batchable(task) -> bool:
    return task.task_type.value in BATCHABLE_TASK_TYPES


def _is_abandoned(task, now) -> bool:
    if task.status != TaskStatus.PROCESSING or task.batch_handle is not None:
        return False
    started = task.started_at.replace(tzinfo=None) if task.started_at else None
    return started is None or started < now - timedelta(seconds=CLAIM_STALE_AFTER)


def run_immediate(session, task, result: SweepResult) -> None:
    """Run one claimed immediate task; its writes commit with the completion."""
    ctx = {'task_id': task.id, 'brand_id': task.brand_id, 'lead_id': task.lead_id}
    try:
        handler = get_handler(HANDLERS, task.task_type.value)
        handler.run(task, session)
        complete_task(session, task.id)
        result.completed += 1
        logger.info("Task %s (%s) completed", task.id, task.task_type.value, extra=ctx)
    except Exception as e:
        session.rollback()
        logger.error("Task %s (%s) failed: %s", task.id, task.task_type.value, e, exc_info=True, extra=ctx)
        fail_task(session, task.id, str(e))
        result.failed += 1
        result.errors.append(f'task {task.id}: {e}')


def submit_batchable(session, tasks, result: SweepResult) -> None:
    """Submit claimed batchable tasks, one external batch per brand."""
    by_brand = OrderedDict()
    for task in tasks:
        by_brand.setdefault(task.brand_id, []).append(task)

    for brand_id, group in by_brand.items():
        try:
            handle = submit_intent_batch(session, group, brand_id)
        except Exception as e:
            session.rollback()
            logger.error("Batch submission for brand %s raised", brand_id, exc_info=True,
                         extra={'brand_id': brand_id})
            result.errors.append(f'brand {brand_id}: {e}')
            continue
        if handle:
            result.submitted += len(group)
            result.batch_handles.append(handle)
        else:
            result.failed += len(group)


def run_queue_sweep(now: datetime = None) -> SweepResult:
    """One scheduler invocation. Safe to run concurrently with itself."""
    result = SweepResult()

    try:
        poll = poll_batches()
        result.batches_polled = poll.polled
        result.batches_completed = poll.completed
    except Exception as e:
        logger.error("Batch polling failed", exc_info=True)
        result.errors.append(f'poll: {e}')

    now = now or datetime.now()
    anthropic_open = get_breaker('anthropic').is_open()
    if anthropic_open:
        logger.warning("Anthropic circuit open — batchable tasks stay pending this sweep")

    session = get_session()
    try:
        candidates = select_queue_candidates(session, QUEUE_FETCH_LIMIT)
        logger.info("Queue sweep: %d candidate tasks", len(candidates))

        batchable = []
        for task in candidates:
            if task.status == TaskStatus.PROCESSING:
                if _is_abandoned(task, now) and fail_abandoned_claim(session, task):
                    result.abandoned += 1
                    logger.warning("Failed abandoned claim on task %s", task.id,
                                   extra={'task_id': task.id, 'brand_id': task.brand_id})
                continue

            if is_batchable(task) and anthropic_open:
                result.skipped += 1
                continue

            if not claim_task(session, task.id, now):
                # Another sweep won the row
                result.skipped += 1
                continue
            result.claimed += 1

            if is_batchable(task):
                batchable.append(task)
            else:
                run_immediate(session, task, result)

        if batchable:
            submit_batchable(session, batchable, result)
    finally:
        session.close()

    logger.info(
        "Queue sweep done: claimed=%d completed=%d failed=%d submitted=%d skipped=%d abandoned=%d",
        result.claimed, result.completed, result.failed, result.submitted, result.skipped, result.abandoned,
    )
    return result
