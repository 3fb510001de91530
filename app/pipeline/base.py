"""
Queue contracts.

Immediate task types implement TaskHandler.run(); the scheduler only sees the
uniform interface and looks handlers up by task type. Result dataclasses are
the uniform return values of the ingestion, sweep and reconcile entry points
(they are also what the HTTP trigger endpoints serialize).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Type


@dataclass
class IngestResult:
    """Outcome of persisting one account's sub-batch."""
    account_id: str
    brand_id: Optional[int] = None
    received: int = 0
    admitted: int = 0
    dropped: int = 0
    leads_inserted: int = 0
    tasks_queued: int = 0
    enrichment_failures: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SweepResult:
    """Outcome of one scheduler invocation."""
    batches_polled: int = 0
    batches_completed: int = 0
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    submitted: int = 0
    skipped: int = 0
    abandoned: int = 0
    batch_handles: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PollResult:
    """Outcome of reconciling outstanding batches."""
    polled: int = 0
    completed: int = 0
    still_running: int = 0
    poll_failures: int = 0
    leads_scored: int = 0
    leads_unscored: int = 0
    stale: List[str] = field(default_factory=list)


class TaskHandler(ABC):
    """
    Base class for immediate (non-batchable) task handlers.

    run() receives the claimed task and an open session. It raises on
    failure; the scheduler records the error and moves on. Handlers commit
    nothing — the scheduler commits the handler's writes together with the
    task's completion.
    """
    task_type: str = ''
    description: str = ''

    @abstractmethod
    def run(self, task: Any, session: Any) -> None:
        ...


def get_handler(handlers: Dict[str, Type[TaskHandler]], task_type: str) -> TaskHandler:
    """Look up and instantiate the handler for a task type."""
    handler_cls = handlers.get(task_type)
    if not handler_cls:
        raise ValueError(f"No handler registered for task type '{task_type}'")
    return handler_cls()
