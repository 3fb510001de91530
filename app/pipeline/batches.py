"""
Intent batch lifecycle — submit claimed ai_intent tasks, poll, reconcile.

Submission
    One Message Batches request per task. custom_id is `lead_<id>` when the
    task already knows its lead, else `task_<id>_<index>`. On success an
    AiBatch row (processing) is written and the handle stamped on every task
    in the same commit. On failure every task in the group fails and its
    lead is closed out with a null score.

Polling
    Every processing AiBatch is checked. Ended batches have their results
    applied one by one (a bad result never stops the rest), then all tasks
    move processing → completed and the batch → completed. Lead writes are
    conditional on processed = false, so reconciling twice is a no-op.
    Batches that stay open past BATCH_STALE_AFTER_HOURS are flagged, never
    auto-failed.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import select

from app.config import BATCH_STALE_AFTER_HOURS
from app.database import get_session
from app.models.batch import AiBatch, complete_batch
from app.models.lead import LeadRecord
from app.models.task import Task, TaskStatus, transition_tasks
from app.pipeline.base import PollResult
from app.services import anthropic_batches
from app.services.conversation import ConversationSummary, build_intent_prompt, parse_conversation
from app.services.db import attach_batch_handle, processing_batches, record_intent
from app.services.notifications import notify_stale_batches

logger = logging.getLogger('pipeline.batches')


# ── Correlation ids ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResolvedLead:
    lead_id: int

    @property
    def custom_id(self):
        return f'lead_{self.lead_id}'


@dataclass(frozen=True)
class UnresolvedTask:
    task_id: int
    index: int = 0

    @property
    def custom_id(self):
        return f'task_{self.task_id}_{self.index}'


Correlation = Union[ResolvedLead, UnresolvedTask]

_LEAD_RE = re.compile(r'^lead_(\d+)$')
_TASK_RE = re.compile(r'^task_(\d+)_(\d+)$')


def correlation_for(task: Task, index: int) -> Correlation:
    if task.lead_id is not None:
        return ResolvedLead(task.lead_id)
    return UnresolvedTask(task.id, index)


def parse_correlation_id(custom_id: str) -> Correlation:
    match = _LEAD_RE.match(custom_id or '')
    if match:
        return ResolvedLead(int(match.group(1)))
    match = _TASK_RE.match(custom_id or '')
    if match:
        return UnresolvedTask(int(match.group(1)), int(match.group(2)))
    raise ValueError(f"Unrecognized correlation id: {custom_id!r}")


def resolve_lead_id(correlation: Correlation, task_leads: Dict[int, Optional[int]]) -> Optional[int]:
    """Lead id for a result; task-based ids look the lead up on the task row."""
    if isinstance(correlation, ResolvedLead):
        return correlation.lead_id
    return task_leads.get(correlation.task_id)


# ── Scores ───────────────────────────────────────────────────────────────────

_NUMBER_RE = re.compile(r'\d+')


def parse_intent_score(text: Optional[str]) -> Optional[int]:
    """First integer in the response if it is 1–10, else None (no default guess)."""
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    score = int(match.group())
    return score if 1 <= score <= 10 else None


# ── Submission ───────────────────────────────────────────────────────────────

def _prompt_for(session, task: Task) -> str:
    payload = task.payload or {}
    if payload.get('prompt'):
        return payload['prompt']
    if task.lead_id is not None:
        lead = session.get(LeadRecord, task.lead_id)
        if lead is not None and lead.parsed_conversation:
            return build_intent_prompt(ConversationSummary.from_dict(lead.parsed_conversation))
        if lead is not None:
            return build_intent_prompt(parse_conversation(lead.conversation))
    return build_intent_prompt(parse_conversation(payload.get('conversation_history')))


def _close_out_leads(session, lead_ids):
    for lead_id in lead_ids:
        if lead_id is not None:
            record_intent(session, lead_id, None)


def fail_group(session, tasks: Sequence[Task], error) -> int:
    """Fail every task in a group and close out their leads with a null score."""
    failed = transition_tasks(
        session, [t.id for t in tasks], TaskStatus.PROCESSING, TaskStatus.FAILED,
        completed_at=datetime.now(), error_message=str(error)[:1000],
    )
    _close_out_leads(session, [t.lead_id for t in tasks])
    session.commit()
    return failed


def submit_intent_batch(session, tasks: Sequence[Task], brand_id: Optional[int]) -> Optional[str]:
    """
    Submit claimed (processing) ai_intent tasks as one external batch.

    Returns the batch handle, or None when the submission failed (every task
    in the group is failed in that case).
    """
    if not tasks:
        return None

    requests = []
    for index, task in enumerate(tasks):
        prompt = _prompt_for(session, task)
        requests.append(anthropic_batches.build_request(correlation_for(task, index).custom_id, prompt))

    try:
        handle = anthropic_batches.submit_batch(requests)
    except Exception as e:
        logger.error("Batch submission failed for %d tasks", len(tasks), exc_info=True,
                     extra={'brand_id': brand_id})
        fail_group(session, tasks, f'Batch submission failed: {e}')
        return None

    try:
        session.add(AiBatch(
            batch_handle=handle,
            brand_id=brand_id,
            task_ids=[t.id for t in tasks],
            lead_ids=[t.lead_id for t in tasks],
        ))
        attach_batch_handle(session, [t.id for t in tasks], handle)
        session.commit()
    except Exception:
        session.rollback()
        # The external batch exists but is untracked; its tasks will surface as abandoned claims
        logger.critical("Batch %s submitted but could not be recorded", handle, exc_info=True,
                        extra={'batch_handle': handle, 'brand_id': brand_id})
        raise

    logger.info("Submitted %d ai_intent tasks as batch %s", len(tasks), handle,
                extra={'batch_handle': handle, 'brand_id': brand_id})
    return handle


# ── Polling / reconciliation ─────────────────────────────────────────────────

def _task_leads(session, task_ids) -> Dict[int, Optional[int]]:
    rows = session.execute(select(Task.id, Task.lead_id).where(Task.id.in_(list(task_ids)))).all()
    return {task_id: lead_id for task_id, lead_id in rows}


def apply_results(session, batch: AiBatch, results, poll: PollResult) -> None:
    """Write each result to its lead; one result's failure never stops the rest."""
    task_leads = _task_leads(session, batch.task_ids or [])
    seen = set()

    for result in results:
        try:
            correlation = parse_correlation_id(result.correlation_id)
            lead_id = resolve_lead_id(correlation, task_leads)
            if lead_id is None:
                logger.warning("Result %s has no resolvable lead", result.correlation_id,
                               extra={'batch_handle': batch.batch_handle})
                continue
            seen.add(lead_id)

            score = parse_intent_score(result.text) if result.succeeded else None
            if result.succeeded and score is None:
                logger.warning("Unparseable intent score for lead %s: %r", lead_id, result.text,
                               extra={'batch_handle': batch.batch_handle, 'lead_id': lead_id})
            elif not result.succeeded:
                logger.info("Intent request for lead %s ended as %s", lead_id, result.outcome,
                            extra={'batch_handle': batch.batch_handle, 'lead_id': lead_id})

            if record_intent(session, lead_id, score):
                if score is None:
                    poll.leads_unscored += 1
                else:
                    poll.leads_scored += 1
            session.commit()
        except Exception:
            session.rollback()
            logger.error("Failed to apply result %s", getattr(result, 'correlation_id', '?'),
                         exc_info=True, extra={'batch_handle': batch.batch_handle})

    # Leads the service returned nothing for are closed out unscored
    missing = [lead_id for lead_id in set(task_leads.values()) if lead_id is not None and lead_id not in seen]
    if missing:
        logger.warning("%d leads missing from results of batch %s", len(missing), batch.batch_handle,
                       extra={'batch_handle': batch.batch_handle})
        _close_out_leads(session, missing)
        session.commit()


def reconcile_batch(session, batch: AiBatch, poll: PollResult) -> str:
    """Check one batch; apply its results if it has ended. Returns the external status."""
    status = anthropic_batches.get_batch_status(batch.batch_handle)
    if status != anthropic_batches.ENDED:
        return status

    logger.info("Batch %s ended, retrieving results", batch.batch_handle,
                extra={'batch_handle': batch.batch_handle})
    apply_results(session, batch, anthropic_batches.iter_batch_results(batch.batch_handle), poll)

    transition_tasks(
        session, batch.task_ids or [], TaskStatus.PROCESSING, TaskStatus.COMPLETED,
        completed_at=datetime.now(),
    )
    complete_batch(session, batch.batch_handle)
    session.commit()
    return status


def _stale_snapshot(batch: AiBatch) -> Dict:
    # Plain values; the ORM rows are unusable once the session closes
    return {
        'batch_handle': batch.batch_handle,
        'brand_id': batch.brand_id,
        'task_count': len(batch.task_ids or []),
        'created_at': batch.created_at,
    }


def poll_batches(now: datetime = None) -> PollResult:
    """Reconcile every outstanding batch. Polling failures are retried next sweep."""
    poll = PollResult()
    now = now or datetime.now()
    stale_cutoff = now - timedelta(hours=BATCH_STALE_AFTER_HOURS)
    stale: List[Dict] = []

    session = get_session()
    try:
        for batch in processing_batches(session):
            poll.polled += 1
            try:
                status = reconcile_batch(session, batch, poll)
            except Exception:
                session.rollback()
                poll.poll_failures += 1
                logger.error("Error polling batch %s", batch.batch_handle, exc_info=True,
                             extra={'batch_handle': batch.batch_handle})
                status = None

            if status == anthropic_batches.ENDED:
                poll.completed += 1
                continue
            poll.still_running += 1
            if batch.created_at is not None and batch.created_at.replace(tzinfo=None) < stale_cutoff:
                stale.append(_stale_snapshot(batch))
    finally:
        session.close()

    if stale:
        poll.stale = [b['batch_handle'] for b in stale]
        logger.warning("%d batches still processing after %dh: %s", len(stale), BATCH_STALE_AFTER_HOURS,
                       ', '.join(poll.stale))
        notify_stale_batches(stale, BATCH_STALE_AFTER_HOURS)
    return poll
