"""
SmartLead master-inbox client — full conversation thread for one lead.
"""
import logging
from typing import Dict, Optional

import requests

from app.config import SMARTLEAD_API_URL, SMARTLEAD_TIMEOUT

logger = logging.getLogger('services.smartlead')


class SmartLeadError(Exception):
    """Non-2xx response from SmartLead."""
    def __init__(self, status_code, body=''):
        self.status_code = status_code
        super().__init__(f"SmartLead returned {status_code}: {body[:200]}")


def _post_inbox_replies(api_key: str, external_lead_id: int) -> Dict:
    response = requests.post(
        f"{SMARTLEAD_API_URL}/master-inbox/inbox-replies",
        params={'api_key': api_key, 'fetch_message_history': 'true'},
        json={
            'offset': 0,
            'limit': 20,
            'filters': {'leadIds': [external_lead_id]},
            'sortBy': 'REPLY_TIME_DESC',
        },
        timeout=SMARTLEAD_TIMEOUT,
    )
    if not response.ok:
        raise SmartLeadError(response.status_code, response.text or '')
    return response.json()


def fetch_lead_thread(api_key: str, external_lead_id) -> Optional[Dict]:
    """
    Fetch the lead + `email_history` for a SmartLead email-lead id.

    Returns None when SmartLead has no such lead. Network/HTTP errors raise
    (the caller decides how to degrade).
    """
    from app.services.circuit_breaker import get_breaker

    lead_id = int(external_lead_id)
    cb = get_breaker('smartlead')
    result = cb.call(_post_inbox_replies, api_key, lead_id)

    leads = (result or {}).get('data') or []
    if not leads:
        logger.info("No conversation data in SmartLead for lead %s", lead_id)
        return None
    return leads[0]
