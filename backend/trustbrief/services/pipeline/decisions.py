"""
Stage outcomes as explicit decisions.

Every stage handler returns one Decision. transition() is the single,
pure place that turns (stage, decision) into the run's next status, so
the whole state machine can be tested without a database or a queue.

    Proceed                 → next stage in order
    Rediscover(terms)       → DISCOVER again with broadened terms   (after DISCOVER only)
    DeepenExtraction(ids)   → EXTRACT again on full text            (after EXTRACT only)
    AdversarialResynthesis  → SYNTHESIZE again, challenging claims  (after VERIFY only)
    Reject(reason)          → REJECTED
    Fail(reason)            → FAILED
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Union

from trustbrief.services.pipeline.states import RunStatus, next_stage


@dataclass(frozen=True)
class Proceed:
    reason: str = ""


@dataclass(frozen=True)
class Rediscover:
    terms: tuple[str, ...]
    reason: str = ""


@dataclass(frozen=True)
class DeepenExtraction:
    source_ids: tuple[str, ...]
    reason: str = ""


@dataclass(frozen=True)
class AdversarialResynthesis:
    focus: tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""


@dataclass(frozen=True)
class Reject:
    reason: str


@dataclass(frozen=True)
class Fail:
    reason: str


Decision = Union[Proceed, Rediscover, DeepenExtraction, AdversarialResynthesis, Reject, Fail]


class InvalidTransition(ValueError):
    """A decision that makes no sense after the given stage. Always a bug."""


def transition(stage: RunStatus, decision: Decision) -> RunStatus:
    if isinstance(decision, Proceed):
        return next_stage(stage)
    if isinstance(decision, Reject):
        return RunStatus.REJECTED
    if isinstance(decision, Fail):
        return RunStatus.FAILED
    if isinstance(decision, Rediscover) and stage == RunStatus.DISCOVER:
        return RunStatus.DISCOVER
    if isinstance(decision, DeepenExtraction) and stage == RunStatus.EXTRACT:
        return RunStatus.EXTRACT
    if isinstance(decision, AdversarialResynthesis) and stage == RunStatus.VERIFY:
        return RunStatus.SYNTHESIZE
    raise InvalidTransition(f"{type(decision).__name__} is not valid after {stage.value}")


DECISION_NAMES = {
    Proceed: "PROCEED",
    Rediscover: "REDISCOVER",
    DeepenExtraction: "DEEPEN_EXTRACTION",
    AdversarialResynthesis: "ADVERSARIAL_RESYNTHESIS",
    Reject: "REJECT",
    Fail: "FAIL",
}


def decision_name(decision: Decision) -> str:
    return DECISION_NAMES[type(decision)]


def log_entry(stage: RunStatus, decision: Decision, next_status: RunStatus, **details) -> dict:
    """One decision-log record (JSON-ready)."""
    payload = asdict(decision)
    reason = payload.pop("reason", "")
    return {
        "stage": stage.value,
        "decision": decision_name(decision),
        "reason": reason,
        "next_status": next_status.value,
        "details": {**{k: list(v) if isinstance(v, tuple) else v for k, v in payload.items()}, **details},
        "at": datetime.utcnow().isoformat(),
    }


def decision_from_entry(entry: dict) -> Decision:
    """Rebuild the Decision a decision-log record was written from."""
    cls = next(kind for kind, name in DECISION_NAMES.items() if name == entry["decision"])
    details = entry.get("details") or {}
    kwargs = {
        f.name: tuple(details[f.name]) if isinstance(details[f.name], list) else details[f.name]
        for f in fields(cls)
        if f.name in details and f.name != "reason"
    }
    return cls(**kwargs, reason=entry.get("reason", ""))
