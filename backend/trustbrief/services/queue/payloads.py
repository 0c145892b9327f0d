"""
Job payloads: one closed, tagged variant per queue.

Every payload carries the run id and the run's correlation id. The `kind`
tag equals the queue name, and validate_payload() refuses anything that
doesn't match the queue it is being enqueued on, so a worker never sees a
shape it doesn't expect.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from trustbrief.errors import InvalidJobPayloadError, QueueNotFoundError


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    run_id: str = Field(min_length=1)
    correlation_id: str = Field(min_length=1)


class DiscoverPayload(JobPayload):
    kind: Literal["discover"] = "discover"
    # Set on the single re-discovery pass
    broadened: bool = False
    terms: list[str] = Field(default_factory=list)


class EnrichPayload(JobPayload):
    kind: Literal["enrich"] = "enrich"


class DeduplicatePayload(JobPayload):
    kind: Literal["deduplicate"] = "deduplicate"


class SelectPayload(JobPayload):
    kind: Literal["select"] = "select"


class ExtractPayload(JobPayload):
    kind: Literal["extract"] = "extract"
    # Non-empty on the deep (full-text) pass: only these sources are re-read
    deep_source_ids: list[str] = Field(default_factory=list)


class SynthesizePayload(JobPayload):
    kind: Literal["synthesize"] = "synthesize"
    adversarial: bool = False
    # Claims the adversarial pass should challenge
    focus: list[str] = Field(default_factory=list)


class VerifyPayload(JobPayload):
    kind: Literal["verify"] = "verify"


class RenderPayload(JobPayload):
    kind: Literal["render"] = "render"


class PublishPayload(JobPayload):
    kind: Literal["publish"] = "publish"


class SignalScanPayload(JobPayload):
    kind: Literal["signals"] = "signals"
    source_ids: list[str] = Field(default_factory=list)


AnyPayload = Annotated[
    Union[
        DiscoverPayload,
        EnrichPayload,
        DeduplicatePayload,
        SelectPayload,
        ExtractPayload,
        SynthesizePayload,
        VerifyPayload,
        RenderPayload,
        PublishPayload,
        SignalScanPayload,
    ],
    Field(discriminator="kind"),
]

QUEUE_PAYLOADS: dict[str, type[JobPayload]] = {
    "discover": DiscoverPayload,
    "enrich": EnrichPayload,
    "deduplicate": DeduplicatePayload,
    "select": SelectPayload,
    "extract": ExtractPayload,
    "synthesize": SynthesizePayload,
    "verify": VerifyPayload,
    "render": RenderPayload,
    "publish": PublishPayload,
    "signals": SignalScanPayload,
}

QUEUE_NAMES = tuple(QUEUE_PAYLOADS)

_adapter: TypeAdapter = TypeAdapter(AnyPayload)


def validate_payload(queue_name: str, payload: Any) -> JobPayload:
    """
    Validate a payload for a queue.

    Accepts a payload model or a plain dict (a missing `kind` defaults to
    the queue name). Raises QueueNotFoundError for unknown queues and
    InvalidJobPayloadError for anything malformed or aimed at the wrong queue.
    """
    if queue_name not in QUEUE_PAYLOADS:
        raise QueueNotFoundError(queue_name)

    if isinstance(payload, BaseModel):
        data = payload.model_dump()
    elif isinstance(payload, dict):
        data = {"kind": queue_name, **payload}
    else:
        raise InvalidJobPayloadError(f"Payload for {queue_name} must be an object, got {type(payload).__name__}")

    try:
        parsed = _adapter.validate_python(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidJobPayloadError(f"Invalid payload for queue {queue_name}: {problems}") from e

    if parsed.kind != queue_name:
        raise InvalidJobPayloadError(f"Payload of kind '{parsed.kind}' cannot be enqueued on {queue_name}")
    return parsed
