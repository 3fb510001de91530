"""
Lead persistence + task enqueuer — turns a flushed webhook batch into rows.

Flushed entries are grouped by upstream account. Per account:

  resolve account → quota gate (first K kept) → enrich from SmartLead
  → bulk INSERT leads + bump usage (one commit)
  → map lead ids back by email → bulk INSERT ai_intent tasks (second commit)

If the lead insert fails nothing else happens for that account. If the task
insert fails the leads stay without tasks; that is logged loudly and the
reconciliation sweep re-enqueues them later.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.config import INGEST_INLINE, TASK_PRIORITIES
from app.database import get_session
from app.models.lead import LeadStatus
from app.models.task import TaskStatus, TaskType
from app.pipeline.base import IngestResult
from app.services import quota
from app.services.conversation import (
    ConversationSummary, build_intent_prompt, last_reply_time,
    normalize_history, parse_conversation,
)
from app.services.credentials import ResolvedAccount, resolve_account
from app.services.db import bulk_insert_leads, bulk_insert_tasks, map_ids_by_email
from app.services.notifications import notify_task_insert_failed
from app.services.smartlead import fetch_lead_thread

logger = logging.getLogger('pipeline.ingest')

EMAIL_FIELDS = ('sl_lead_email', 'lead_email', 'email')


def extract_lead_email(event: Dict[str, Any]) -> Optional[str]:
    """SmartLead has shipped the email under several keys over time."""
    for key in EMAIL_FIELDS:
        value = event.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# ── Flush hand-off (called by BatchCollector) ────────────────────────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from rq import Queue
        from app.extensions import rq_connection
        _queue = Queue('ingest', connection=rq_connection)
    return _queue


def _process_in_background(entries):
    thread = threading.Thread(target=process_collected_batch, args=(entries,), daemon=True)
    thread.start()
    return thread


def dispatch_flush(entries: List[Dict[str, Any]]):
    """
    Hand a flushed batch to a worker without blocking the webhook request.

    RQ in production; a daemon thread when INGEST_INLINE is set or Redis
    refuses the job.
    """
    if INGEST_INLINE:
        return _process_in_background(entries)
    try:
        return _get_queue().enqueue(process_collected_batch, entries, job_timeout=900)
    except Exception:
        logger.warning("RQ enqueue failed — processing %d entries in-process", len(entries), exc_info=True)
        return _process_in_background(entries)


# ── Batch processing ─────────────────────────────────────────────────────────

def group_by_account(entries: List[Dict[str, Any]]) -> "OrderedDict[str, List[Dict[str, Any]]]":
    groups = OrderedDict()
    for entry in entries:
        groups.setdefault(str(entry.get('account_id')), []).append(entry)
    return groups


def process_collected_batch(entries: List[Dict[str, Any]]) -> List[IngestResult]:
    """RQ job entry point: process every account in a flushed batch."""
    groups = group_by_account(entries)
    logger.info("Processing batch of %d leads across %d accounts", len(entries), len(groups))

    results = []
    for account_id, events in groups.items():
        try:
            results.append(process_account_leads(account_id, events))
        except Exception as e:
            # One account never blocks the others
            logger.error("Error processing account %s", account_id, exc_info=True,
                         extra={'account_id': account_id})
            results.append(IngestResult(account_id=account_id, received=len(events), errors=[str(e)]))
    return results


def dedupe_by_email(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One event per lead email: first arrival keeps its slot, the latest payload wins."""
    by_email = OrderedDict()
    for event in events:
        email = (event.get('lead_email') or extract_lead_email(event) or '').lower()
        by_email[email] = event if email not in by_email else {**by_email[email], **event}
    return list(by_email.values())


@dataclass
class PreparedLead:
    row: Dict[str, Any]
    summary: ConversationSummary
    enrichment_failed: bool = False


def _fallback_history(event):
    data = event.get('conversation_data') or {}
    history = data.get('history') if isinstance(data, dict) else data
    return history if isinstance(history, list) else []


def prepare_lead(event: Dict[str, Any], account: ResolvedAccount) -> PreparedLead:
    """Enrich one event from SmartLead (best effort) and build its lead row."""
    lead_email = event.get('lead_email') or extract_lead_email(event)
    external_id = event.get('sl_email_lead_id')
    thread = None
    enrichment_failed = False

    if account.api_key and external_id:
        try:
            thread = fetch_lead_thread(account.api_key, external_id)
        except Exception as e:
            enrichment_failed = True
            logger.warning("SmartLead fetch failed for %s, using webhook data: %s", lead_email, e,
                           extra={'account_id': account.account_id})

    thread = thread or {}
    history = normalize_history(thread.get('email_history'), lead_email) if thread else []
    if not history:
        history = normalize_history(_fallback_history(event), lead_email)

    summary = parse_conversation(history)
    first = history[0] if history else {}

    row = {
        'brand_id': account.brand_id,
        'email_account_id': account.account_id,
        'lead_email': lead_email,
        'first_name': thread.get('lead_first_name') or event.get('first_name') or '',
        'last_name': thread.get('lead_last_name') or event.get('last_name') or '',
        'website': thread.get('lead_website') or event.get('website') or '',
        'phone': thread.get('lead_phone') or None,
        'subject': first.get('subject') or event.get('subject') or '',
        'lead_category': str(thread.get('lead_category_id') or '1'),
        'campaign_id': str(event['campaign_id']) if event.get('campaign_id') is not None else None,
        'campaign_name': thread.get('email_campaign_name') or event.get('campaign_name'),
        'external_lead_id': str(external_id) if external_id is not None else None,
        'conversation': history,
        'parsed_conversation': summary.to_dict(),
        'intent': None,
        'processed': False,
        'status': LeadStatus.INBOX,
        'last_reply_time': last_reply_time(history),
    }
    return PreparedLead(row=row, summary=summary, enrichment_failed=enrichment_failed)


def intent_task_row(lead_email: str, brand_id: int, summary: ConversationSummary,
                    lead_id: Optional[int] = None) -> Dict[str, Any]:
    return {
        'task_type': TaskType.AI_INTENT,
        'status': TaskStatus.PENDING,
        'priority': TASK_PRIORITIES['ai_intent'],
        'brand_id': brand_id,
        'lead_id': lead_id,
        'payload': {
            'lead_email': lead_email,
            'brand_id': brand_id,
            'prompt': build_intent_prompt(summary),
        },
    }


def process_account_leads(account_id: str, events: List[Dict[str, Any]]) -> IngestResult:
    """Persist one account's events and queue their intent tasks."""
    result = IngestResult(account_id=account_id, received=len(events))
    session = get_session()
    try:
        fallback_key = next((e.get('secret_key') for e in events if e.get('secret_key')), None)
        account = resolve_account(session, account_id, fallback_key=fallback_key)
        if account is None:
            result.errors.append('unknown account')
            return result
        result.brand_id = account.brand_id
        log_ctx = {'account_id': account_id, 'brand_id': account.brand_id}

        unique = dedupe_by_email(events)
        if len(unique) < len(events):
            logger.info("Collapsed %d duplicate lead events", len(events) - len(unique), extra=log_ctx)

        decision = quota.evaluate(session, account.brand_id, len(unique))
        admitted = quota.truncate(unique, decision)
        result.admitted = decision.admitted
        result.dropped = decision.dropped
        # No transaction stays open across the SmartLead calls below
        session.rollback()
        if not admitted:
            logger.info("No leads admitted for account %s", account_id, extra=log_ctx)
            return result

        prepared = []
        for event in admitted:
            try:
                lead = prepare_lead(event, account)
            except Exception as e:
                logger.error("Error preparing lead %s", event.get('lead_email'), exc_info=True, extra=log_ctx)
                result.errors.append(str(e))
                continue
            result.enrichment_failures += int(lead.enrichment_failed)
            prepared.append(lead)

        if not prepared:
            return result

        # ── Leads + usage: one commit ────────────────────────────────
        try:
            # Re-check under the brand lock; a concurrent flush may have used the quota meanwhile
            recheck = quota.evaluate(session, account.brand_id, len(prepared), lock=True)
            if recheck.dropped:
                prepared = quota.truncate(prepared, recheck)
                result.admitted -= recheck.dropped
                result.dropped += recheck.dropped
            if not prepared:
                session.rollback()
                logger.info("Quota used up during enrichment for account %s", account_id, extra=log_ctx)
                return result
            leads = bulk_insert_leads(session, [p.row for p in prepared])
            quota.increment_usage(session, account.brand_id, len(leads))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Bulk lead insert failed for account %s", account_id, exc_info=True, extra=log_ctx)
            result.errors.append(f'lead insert: {e}')
            return result
        result.leads_inserted = len(leads)
        logger.info("Inserted %d leads", len(leads), extra=log_ctx)

        # ── Tasks: second commit ─────────────────────────────────────
        ids = map_ids_by_email(leads)
        task_rows = [
            intent_task_row(p.row['lead_email'], account.brand_id, p.summary, ids.get(p.row['lead_email']))
            for p in prepared
        ]
        try:
            bulk_insert_tasks(session, task_rows)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(
                "Task insert failed after %d leads were persisted for account %s — "
                "leads await reconciliation", len(leads), account_id, exc_info=True, extra=log_ctx,
            )
            notify_task_insert_failed(account_id, account.brand_id, len(leads), e)
            result.errors.append(f'task insert: {e}')
            return result
        result.tasks_queued = len(task_rows)
        return result
    finally:
        session.close()
