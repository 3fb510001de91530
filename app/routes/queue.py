"""
Queue routes — health checks, breaker admin, queue stats and sweep triggers.

The sweep triggers run inline by default so a cron caller gets the result
back; `?async=1` hands the work to an RQ worker instead.
"""
import logging
from flask import Blueprint, request, jsonify

from app.config import BATCH_STALE_AFTER_HOURS
from app.database import get_session
from app.services.circuit_breaker import get_all_breakers, get_breaker, SERVICE_LIMITS
from app.services.db import queue_stats
from app.pipeline.reconcile import reconcile_orphan_leads
from app.pipeline.scheduler import enqueue_sweep, run_queue_sweep

logger = logging.getLogger('routes.queue')

bp = Blueprint('queue', __name__)


def _wants_async():
    return request.args.get('async', '').lower() in ('1', 'true', 'yes')


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def breaker_health():
    """Circuit breaker state for every external service."""
    breakers = get_all_breakers()
    services = {name: breaker.get_health() for name, breaker in breakers.items()}
    degraded = [name for name, health in services.items() if health['state'] != 'closed']
    return jsonify({
        'status': 'degraded' if degraded else 'healthy',
        'services': services,
    }), 200


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_breaker(service):
    """Force a breaker closed after the upstream has recovered."""
    if service not in SERVICE_LIMITS:
        return jsonify({'error': f'Unknown service: {service}'}), 404
    breaker = get_breaker(service)
    breaker.reset()
    return jsonify({'ok': True, 'service': service, 'state': breaker.state}), 200


@bp.route('/api/queue/stats')
def get_queue_stats():
    """Task counts by status plus open and stale intent batches."""
    session = get_session()
    try:
        return jsonify(queue_stats(session, BATCH_STALE_AFTER_HOURS)), 200
    except Exception as e:
        logger.error("Failed to load queue stats", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        session.close()


@bp.route('/api/queue/process', methods=['POST'])
def process_queue():
    """Run (or enqueue) one scheduler sweep."""
    try:
        if _wants_async():
            job = enqueue_sweep()
            return jsonify({'queued': True, 'job_id': job.id}), 202
        result = run_queue_sweep()
        return jsonify(result.to_dict()), 200
    except Exception as e:
        logger.error("Queue sweep trigger failed", exc_info=True)
        return jsonify({'error': str(e)}), 500


@bp.route('/api/queue/reconcile', methods=['POST'])
def reconcile_queue():
    """Queue missing ai_intent tasks for orphaned leads."""
    try:
        created = reconcile_orphan_leads()
        return jsonify({'tasks_created': created}), 200
    except Exception as e:
        logger.error("Reconcile trigger failed", exc_info=True)
        return jsonify({'error': str(e)}), 500
