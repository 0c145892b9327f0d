# Job orchestration layer: validated, idempotent, retrying rq job queues
from trustbrief.services.queue.connection import get_redis_connection
from trustbrief.services.queue.jobs import (
    BackoffType,
    DeadLetterEntry,
    Job,
    JobOptions,
    JobStatus,
    QueueMetrics,
    RetryPolicy,
)
from trustbrief.services.queue.manager import QueueManager
from trustbrief.services.queue.payloads import (
    QUEUE_NAMES,
    DeduplicatePayload,
    DiscoverPayload,
    EnrichPayload,
    ExtractPayload,
    JobPayload,
    PublishPayload,
    RenderPayload,
    SelectPayload,
    SignalScanPayload,
    SynthesizePayload,
    VerifyPayload,
    validate_payload,
)
from trustbrief.services.queue.recorder import JobRecorder
from trustbrief.services.queue.tasks import WorkerRuntime, install_runtime, run_job

__all__ = [
    "QUEUE_NAMES",
    "BackoffType",
    "DeadLetterEntry",
    "DeduplicatePayload",
    "DiscoverPayload",
    "EnrichPayload",
    "ExtractPayload",
    "Job",
    "JobOptions",
    "JobPayload",
    "JobRecorder",
    "JobStatus",
    "PublishPayload",
    "QueueManager",
    "QueueMetrics",
    "RenderPayload",
    "RetryPolicy",
    "SelectPayload",
    "SignalScanPayload",
    "SynthesizePayload",
    "VerifyPayload",
    "WorkerRuntime",
    "get_redis_connection",
    "install_runtime",
    "run_job",
    "validate_payload",
]
