"""
Run statuses and stage order.

    PENDING → DISCOVER → ENRICH → DEDUPLICATE → SELECT → EXTRACT
            → SYNTHESIZE → VERIFY → RENDER → PUBLISH → PUBLISHED

A run may also end REJECTED (quality gate) or FAILED (no sources, or a
stage job dead-lettered). Terminal statuses are never left.
"""

from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    PENDING = "PENDING"
    DISCOVER = "DISCOVER"
    ENRICH = "ENRICH"
    DEDUPLICATE = "DEDUPLICATE"
    SELECT = "SELECT"
    EXTRACT = "EXTRACT"
    SYNTHESIZE = "SYNTHESIZE"
    VERIFY = "VERIFY"
    RENDER = "RENDER"
    PUBLISH = "PUBLISH"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def queue(self) -> str:
        """Queue that processes this stage."""
        return self.value.lower()

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL


STAGE_ORDER: tuple[RunStatus, ...] = (
    RunStatus.DISCOVER,
    RunStatus.ENRICH,
    RunStatus.DEDUPLICATE,
    RunStatus.SELECT,
    RunStatus.EXTRACT,
    RunStatus.SYNTHESIZE,
    RunStatus.VERIFY,
    RunStatus.RENDER,
    RunStatus.PUBLISH,
)

TERMINAL = frozenset({RunStatus.PUBLISHED, RunStatus.REJECTED, RunStatus.FAILED})


def next_stage(stage: RunStatus) -> RunStatus:
    """The status that follows a successful stage. PUBLISH is followed by PUBLISHED."""
    index = STAGE_ORDER.index(stage)
    if index == len(STAGE_ORDER) - 1:
        return RunStatus.PUBLISHED
    return STAGE_ORDER[index + 1]


def stage_for_queue(queue_name: str) -> Optional[RunStatus]:
    for stage in STAGE_ORDER:
        if stage.queue == queue_name:
            return stage
    return None
