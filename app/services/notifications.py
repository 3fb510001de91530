"""
Notifications — Slack webhook alerts for queue conditions that need a human.

Notification failure never blocks the queue.
"""
import logging
import requests

from app.config import SLACK_WEBHOOK_URL

logger = logging.getLogger('services.notifications')


def _post(blocks):
    requests.post(SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)


def notify_stale_batches(batches, stale_after_hours):
    """Alert on intent batches still processing past the staleness threshold."""
    if not SLACK_WEBHOOK_URL or not batches:
        return

    try:
        lines = [
            f"• `{b['batch_handle']}` — brand {b['brand_id']}, {b['task_count']} tasks, "
            f"submitted {b['created_at']:%Y-%m-%d %H:%M}"
            for b in batches[:20]
        ]
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{len(batches)} intent batch(es) stuck > {stale_after_hours}h",
                }
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(lines)},
            },
        ]
        _post(blocks)
        logger.info("Stale batch notification sent for %d batches", len(batches))

    except Exception:
        logger.error("Failed to send stale batch notification", exc_info=True)


def notify_task_insert_failed(account_id, brand_id, lead_count, error):
    """Alert when leads were persisted but their intent tasks were not."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Leads persisted without intent tasks"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Account:* {account_id}"},
                    {"type": "mrkdwn", "text": f"*Brand:* {brand_id}"},
                    {"type": "mrkdwn", "text": f"*Leads:* {lead_count}"},
                ]
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:* ```{str(error)[:500]}```"},
            },
        ]
        _post(blocks)

    except Exception:
        logger.error("Failed to send task-insert alert for account %s", account_id, exc_info=True)
