"""
Orphan lead reconciliation.

Lead rows and their ai_intent tasks are written in separate commits. When the
second commit fails the leads exist unprocessed with no task. This sweep finds
them (older than RECONCILE_GRACE_MINUTES so in-flight ingestion is not raced)
and queues the missing tasks.
"""
import logging
from datetime import datetime, timedelta

from app.config import RECONCILE_GRACE_MINUTES
from app.database import get_session
from app.services.conversation import ConversationSummary, parse_conversation
from app.services.db import bulk_insert_tasks, leads_missing_intent_task
from app.pipeline.ingest import intent_task_row

logger = logging.getLogger('pipeline.reconcile')


def _summary_for(lead) -> ConversationSummary:
    if lead.parsed_conversation:
        return ConversationSummary.from_dict(lead.parsed_conversation)
    return parse_conversation(lead.conversation)


def reconcile_orphan_leads(now: datetime = None, limit: int = 500) -> int:
    """Queue ai_intent tasks for unprocessed leads that have none. Returns tasks created."""
    now = now or datetime.now()
    cutoff = now - timedelta(minutes=RECONCILE_GRACE_MINUTES)

    session = get_session()
    try:
        orphans = leads_missing_intent_task(session, cutoff, limit=limit)
        if not orphans:
            return 0

        rows = [intent_task_row(lead.lead_email, lead.brand_id, _summary_for(lead), lead.id) for lead in orphans]
        bulk_insert_tasks(session, rows)
        session.commit()
        logger.warning("Re-enqueued ai_intent tasks for %d orphaned leads", len(rows))
        return len(rows)
    except Exception:
        session.rollback()
        logger.error("Orphan lead reconciliation failed", exc_info=True)
        raise
    finally:
        session.close()
