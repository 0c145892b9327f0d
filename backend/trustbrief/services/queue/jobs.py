"""
Job, retry policy and queue metric types.

The queue itself lives in Redis (rq). Job here is the handler's view of an
rq job: the validated payload plus the bookkeeping kept in the rq job's
meta (priority, attempts, idempotency key, last error).
"""

import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from trustbrief.errors import ValidationFailure
from trustbrief.services.queue.payloads import JobPayload

MIN_PRIORITY = 0
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


class JobStatus(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: BackoffType = BackoffType.EXPONENTIAL
    base_delay: float = 2.0
    max_delay: float = 60.0
    # Up to this fraction of the delay is added at random
    jitter: float = 0.1

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        if self.backoff == BackoffType.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay
        delay = min(delay, self.max_delay)
        return delay + delay * self.jitter * rand()

    def intervals(self, rand: Callable[[], float] = random.random) -> list[float]:
        """Seconds to wait before each retry, drawn once when the job is enqueued."""
        return [round(self.delay_for(n, rand), 3) for n in range(1, self.max_attempts)]


@dataclass
class JobOptions:
    idempotency_key: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    delay: float = 0.0
    retry: Optional[RetryPolicy] = None

    def __post_init__(self):
        reasons = []
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            reasons.append(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {self.priority}")
        if self.delay < 0:
            reasons.append("delay must not be negative")
        if self.retry is not None and self.retry.max_attempts < 1:
            reasons.append("max_attempts must be at least 1")
        if reasons:
            raise ValidationFailure("Invalid job options", reasons)


@dataclass
class Job:
    queue: str
    payload: JobPayload
    id: str
    priority: int = DEFAULT_PRIORITY
    idempotency_key: Optional[str] = None
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    max_attempts: int = 1
    backoff: BackoffType = BackoffType.EXPONENTIAL
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Job {self.queue}:{self.id[:8]} run={self.payload.run_id[:8]} status={self.status.value}>"


@dataclass
class DeadLetterEntry:
    job: Job
    error: str
    failed_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class QueueMetrics:
    queue: str
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    dead_lettered: int
    paused: bool
