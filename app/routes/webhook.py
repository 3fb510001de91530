"""
Webhook routes — SmartLead lead-reply events.

Each event is validated and handed to the app's BatchCollector; persistence
happens later when the collector flushes. The response only confirms the
event was buffered.
"""
import logging
from flask import Blueprint, current_app, request, jsonify

from app.pipeline.ingest import extract_lead_email

logger = logging.getLogger('routes.webhook')

bp = Blueprint('webhook', __name__)


@bp.route('/webhook/<account_id>', methods=['POST'])
def receive_lead(account_id):
    """Buffer one lead-reply event for batched persistence."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'success': False, 'error': 'Request body must be a JSON object'}), 400

    lead_email = extract_lead_email(data)
    if not lead_email:
        return jsonify({'success': False, 'error': 'Lead email is required'}), 400

    try:
        collector = current_app.extensions['lead_collector']
        size = collector.add(account_id, data, lead_email)
    except Exception as e:
        logger.error("Failed to buffer lead %s", lead_email, exc_info=True, extra={'account_id': account_id})
        return jsonify({'success': False, 'error': str(e)}), 500

    logger.info("Buffered lead %s (%d pending)", lead_email, size, extra={'account_id': account_id})
    return jsonify({
        'success': True,
        'queued': True,
        'batch_size': size,
        'email': lead_email,
    }), 200
