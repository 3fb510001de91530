"""
Centralized configuration — env vars, queue constants, task vocab.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Anthropic (Message Batches API) ──────────────────────────────────────────
ANTHROPIC_API_KEY = os.getenv('ANTHROPIC_API_KEY')
ANTHROPIC_MODEL = os.getenv('ANTHROPIC_MODEL', 'claude-3-5-haiku-20241022')
INTENT_MAX_TOKENS = int(os.getenv('INTENT_MAX_TOKENS', '10'))

# ── SmartLead (upstream lead source) ─────────────────────────────────────────
SMARTLEAD_API_URL = os.getenv('SMARTLEAD_API_URL', 'https://server.smartlead.ai/api/v1')
SMARTLEAD_TIMEOUT = int(os.getenv('SMARTLEAD_TIMEOUT', '15'))

# Marker the settings UI mixes into stored credentials before base64 encoding
ENCRYPTION_SALT = os.getenv('ENCRYPTION_SALT', 'InboxManager_2024_Salt_Key')

# ── Webhook batch collector ──────────────────────────────────────────────────
BATCH_SIZE = int(os.getenv('BATCH_SIZE', '50'))
BATCH_TIMEOUT = float(os.getenv('BATCH_TIMEOUT', '30'))  # seconds
INGEST_INLINE = os.getenv('INGEST_INLINE', '').lower() in ('1', 'true', 'yes')

# ── Queue scheduler ──────────────────────────────────────────────────────────
QUEUE_FETCH_LIMIT = int(os.getenv('QUEUE_FETCH_LIMIT', '1000'))
CLAIM_STALE_AFTER = int(os.getenv('CLAIM_STALE_AFTER', '900'))  # seconds
BATCH_STALE_AFTER_HOURS = int(os.getenv('BATCH_STALE_AFTER_HOURS', '24'))
RECONCILE_GRACE_MINUTES = int(os.getenv('RECONCILE_GRACE_MINUTES', '15'))

# ── Conversation parsing ─────────────────────────────────────────────────────
MESSAGE_EXCERPT_LIMIT = int(os.getenv('MESSAGE_EXCERPT_LIMIT', '400'))

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Task vocabulary ──────────────────────────────────────────────────────────
# Default priority per task type; higher is dispatched first
TASK_PRIORITIES = {
    'plan_check': 5,
    'lead_sync': 3,
    'conversation_parse': 2,
    'ai_intent': 1,
}

# Task types the scheduler coalesces into one external batch call
BATCHABLE_TASK_TYPES = frozenset({'ai_intent'})
