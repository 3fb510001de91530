"""
Shared client instances — Redis, Anthropic.

Importing this module is always safe (even when env vars are missing during
tests): the Redis client connects lazily and the Anthropic client is only
built when an API key is configured.
"""
import logging
import redis

from app.config import REDIS_URL, ANTHROPIC_API_KEY

logger = logging.getLogger('app.extensions')

# ── Redis ─────────────────────────────────────────────────────────────────────
# Circuit-breaker state and queue stats; decoded strings
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# RQ pickles job payloads, so it needs a raw (bytes) connection
rq_connection = redis.from_url(REDIS_URL)

# ── Anthropic ─────────────────────────────────────────────────────────────────
anthropic_client = None
if ANTHROPIC_API_KEY:
    try:
        from anthropic import Anthropic
        anthropic_client = Anthropic(api_key=ANTHROPIC_API_KEY)
        logger.info("Anthropic client initialized successfully")
    except Exception as e:
        logger.error("Error initializing Anthropic client: %s", e)
else:
    logger.warning("ANTHROPIC_API_KEY not set — intent batches cannot be submitted")
