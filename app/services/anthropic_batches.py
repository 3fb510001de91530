"""
Anthropic Message Batches helpers — submit, status, results.

Every call goes through the `anthropic` circuit breaker. Results are mapped
to a small BatchResult so the tracker never touches SDK response types.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from app.config import ANTHROPIC_MODEL, INTENT_MAX_TOKENS
from app.extensions import anthropic_client as client

logger = logging.getLogger('services.anthropic_batches')

IN_PROGRESS = 'in_progress'
ENDED = 'ended'

SUCCEEDED = 'succeeded'


class BatchServiceUnavailable(Exception):
    """No Anthropic client configured."""


@dataclass(frozen=True)
class BatchResult:
    correlation_id: str
    outcome: str            # succeeded / errored / canceled / expired
    text: Optional[str]

    @property
    def succeeded(self):
        return self.outcome == SUCCEEDED


def _batches():
    if client is None:
        raise BatchServiceUnavailable("ANTHROPIC_API_KEY not configured")
    return client.messages.batches


def _breaker_call(func, *args, **kwargs):
    from app.services.circuit_breaker import get_breaker
    return get_breaker('anthropic').call(func, *args, **kwargs)


def build_request(correlation_id: str, prompt: str) -> Dict:
    """One batch entry: custom_id + Messages API params."""
    return {
        'custom_id': correlation_id,
        'params': {
            'model': ANTHROPIC_MODEL,
            'max_tokens': INTENT_MAX_TOKENS,
            'messages': [{'role': 'user', 'content': prompt}],
        },
    }


def submit_batch(requests: List[Dict]) -> str:
    """Create a batch; returns the external batch handle."""
    batch = _breaker_call(_batches().create, requests=requests)
    logger.info("Batch %s created with %d requests", batch.id, len(requests),
                extra={'batch_handle': batch.id})
    return batch.id


def get_batch_status(batch_handle: str) -> str:
    batch = _breaker_call(_batches().retrieve, batch_handle)
    return batch.processing_status


def _result_text(result) -> Optional[str]:
    message = getattr(result, 'message', None)
    if message is None:
        return None
    for block in message.content or []:
        text = getattr(block, 'text', None)
        if text is not None:
            return text
    return None


def iter_batch_results(batch_handle: str) -> Iterator[BatchResult]:
    """Stream results of an ended batch as BatchResult objects."""
    for entry in _breaker_call(_batches().results, batch_handle):
        outcome = entry.result.type
        text = _result_text(entry.result) if outcome == SUCCEEDED else None
        yield BatchResult(correlation_id=entry.custom_id, outcome=outcome, text=text)
