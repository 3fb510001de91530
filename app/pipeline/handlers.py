"""
Immediate task handlers — run synchronously by the scheduler, one at a time.

  plan_check          payload {"check_type": "monthly_reset"}       → zero usage counters
  conversation_parse  payload {"conversation_history": [...]}       → refresh lead summary
                      (no history in payload → re-parse the stored conversation)
  lead_sync           payload {"sync_type": "count_sync"}           → recount brand usage

ai_intent is batchable and never reaches this registry in normal operation;
the handler here only exists so a mis-routed ai_intent task fails loudly
instead of silently completing.
"""
import logging

from app.models.lead import LeadRecord
from app.pipeline.base import TaskHandler
from app.services import quota
from app.services.conversation import parse_conversation
from app.services.db import update_parsed_conversation

logger = logging.getLogger('pipeline.handlers')


class PlanCheckHandler(TaskHandler):
    task_type = 'plan_check'
    description = 'Monthly plan maintenance'

    def run(self, task, session):
        check_type = (task.payload or {}).get('check_type')
        if check_type == 'monthly_reset':
            # brand_id on the task scopes the reset; no brand → every brand
            touched = quota.reset_monthly_usage(session, task.brand_id)
            logger.info("Monthly lead counters reset for %d brand(s)", touched,
                        extra={'task_id': task.id, 'brand_id': task.brand_id})
        else:
            raise ValueError(f"Unknown plan_check check_type: {check_type!r}")


class ConversationParseHandler(TaskHandler):
    task_type = 'conversation_parse'
    description = 'Re-parse a lead conversation'

    def run(self, task, session):
        if task.lead_id is None:
            raise ValueError("conversation_parse task has no lead_id")
        lead = session.get(LeadRecord, task.lead_id)
        if lead is None:
            raise LookupError(f"Lead {task.lead_id} not found")

        history = (task.payload or {}).get('conversation_history')
        if history is None:
            # Re-parse what ingestion stored
            history = lead.conversation or None
        if not isinstance(history, list):
            raise ValueError(f"No conversation history to parse for lead {task.lead_id}")

        summary = parse_conversation(history)
        update_parsed_conversation(session, task.lead_id, summary.to_dict())
        logger.info("Conversation parsed for lead %s (%d messages)", task.lead_id, summary.message_count,
                    extra={'task_id': task.id, 'lead_id': task.lead_id})


class LeadSyncHandler(TaskHandler):
    task_type = 'lead_sync'
    description = 'Recount brand lead usage'

    def run(self, task, session):
        sync_type = (task.payload or {}).get('sync_type')
        if sync_type != 'count_sync':
            raise ValueError(f"Unknown lead_sync sync_type: {sync_type!r}")
        if task.brand_id is None:
            raise ValueError("count_sync task has no brand_id")
        count = quota.sync_usage_count(session, task.brand_id)
        logger.info("Lead count synced for brand %s: %d", task.brand_id, count,
                    extra={'task_id': task.id, 'brand_id': task.brand_id})


class MisroutedIntentHandler(TaskHandler):
    task_type = 'ai_intent'
    description = 'ai_intent must go through the batch tracker'

    def run(self, task, session):
        raise RuntimeError("ai_intent tasks are batch-only")


HANDLERS = {
    'plan_check': PlanCheckHandler,
    'conversation_parse': ConversationParseHandler,
    'lead_sync': LeadSyncHandler,
    'ai_intent': MisroutedIntentHandler,
}
