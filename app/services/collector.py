"""
Webhook batch collector — coalesces inbound lead events before persistence.

One BatchCollector is owned by each Flask app instance (app.extensions).
A flush fires when the buffer reaches `batch_size` or `timeout` seconds after
the first buffered event, whichever comes first. Appending, the threshold
check and swapping the buffer out happen under one lock; the flush handler is
called after the lock is released so a slow handler never blocks ingestion.

Separate processes each own their own collector, so events are coalesced per
process only. Downstream persistence tolerates that (at-least-once).
"""
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List

logger = logging.getLogger('services.collector')


class BatchCollector:
    """
    Lock-protected, size/time-triggered event buffer.

    Usage:
        collector = BatchCollector(flush_handler=dispatch_flush, batch_size=50, timeout=30)
        size = collector.add('acct-1', event, lead_email='a@b.com')
    """

    def __init__(
        self,
        flush_handler: Callable[[List[Dict[str, Any]]], Any],
        batch_size: int = 50,
        timeout: float = 30.0,
        timer_factory: Callable = threading.Timer,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.flush_handler = flush_handler
        self.batch_size = batch_size
        self.timeout = timeout
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._buffer: List[Dict[str, Any]] = []
        self._timer = None
        self._generation = 0

    # ── Public API ────────────────────────────────────────────────────

    def add(self, account_id: str, event: Dict[str, Any], lead_email: str) -> int:
        """
        Buffer one event. Returns the buffer size right after the append
        (before any size-triggered flush drains it).
        """
        entry = dict(event)
        entry.update({
            'account_id': account_id,
            'lead_email': lead_email,
            'received_at': datetime.now().isoformat(),
            'batch_entry_id': f'batch_{uuid.uuid4().hex[:12]}',
        })

        with self._lock:
            self._buffer.append(entry)
            size = len(self._buffer)
            ready = self._take_full_batch() if size >= self.batch_size else None
            if self._buffer and self._timer is None:
                self._start_timer()

        if ready:
            logger.info("Batch size reached (%d), flushing immediately", len(ready))
            self._dispatch(ready)
        return size

    def flush(self) -> int:
        """Flush everything currently buffered. Returns the number of entries handed off."""
        with self._lock:
            entries = self._buffer
            self._buffer = []
            self._cancel_timer()
        if entries:
            self._dispatch(entries)
        return len(entries)

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def close(self):
        """Cancel the timer and flush what is left (app shutdown)."""
        self.flush()

    # ── Internals (call with self._lock held) ─────────────────────────

    def _take_full_batch(self):
        entries = self._buffer[:self.batch_size]
        self._buffer = self._buffer[self.batch_size:]
        self._cancel_timer()
        return entries

    def _start_timer(self):
        self._generation += 1
        self._timer = self._timer_factory(self.timeout, self._on_timeout, args=(self._generation,))
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ── Timer callback / hand-off ─────────────────────────────────────

    def _on_timeout(self, generation):
        with self._lock:
            # A timer that fired while a size flush replaced it is stale
            if generation != self._generation:
                return
            entries = self._buffer
            self._buffer = []
            self._timer = None
        if entries:
            logger.info("Batch timeout elapsed, flushing %d entries", len(entries))
            self._dispatch(entries)

    def _dispatch(self, entries):
        try:
            self.flush_handler(entries)
        except Exception:
            logger.error("Flush handler failed for %d entries", len(entries), exc_info=True)
