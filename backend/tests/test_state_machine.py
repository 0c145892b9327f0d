"""
Tests for the pipeline state machine: transitions, quality gates, the
payload each decision leads to, and decision-log entries.

All pure; no database, no queue.
"""

from types import SimpleNamespace

import pytest

from trustbrief.services.pipeline import (
    STAGE_ORDER,
    AdversarialResynthesis,
    DeepenExtraction,
    Fail,
    GateConfig,
    InvalidTransition,
    Proceed,
    Reject,
    Rediscover,
    RunStatus,
    transition,
)
from trustbrief.services.pipeline.decisions import log_entry
from trustbrief.services.pipeline.gates import (
    INSUFFICIENT_SOURCES,
    assess_discovery,
    assess_extraction,
    assess_selection,
    assess_verification,
)
from trustbrief.services.pipeline.orchestrator import next_payload
from trustbrief.services.pipeline.states import stage_for_queue
from trustbrief.services.queue import DiscoverPayload, ExtractPayload, SynthesizePayload, VerifyPayload

CONFIG = GateConfig()


# =============================================================================
# TRANSITIONS
# =============================================================================

def test_proceed_walks_the_stage_order():
    status = RunStatus.DISCOVER
    visited = [status]
    while not status.is_terminal:
        status = transition(status, Proceed())
        visited.append(status)

    assert visited == [*STAGE_ORDER, RunStatus.PUBLISHED]


@pytest.mark.parametrize("stage", STAGE_ORDER)
def test_reject_and_fail_are_terminal_from_any_stage(stage):
    assert transition(stage, Reject("no")) == RunStatus.REJECTED
    assert transition(stage, Fail("no")) == RunStatus.FAILED


def test_corrective_loops_go_back_one_step():
    assert transition(RunStatus.DISCOVER, Rediscover(("carbon levy",))) == RunStatus.DISCOVER
    assert transition(RunStatus.EXTRACT, DeepenExtraction(("s1",))) == RunStatus.EXTRACT
    assert transition(RunStatus.VERIFY, AdversarialResynthesis(("weak claim",))) == RunStatus.SYNTHESIZE


@pytest.mark.parametrize(
    "stage, decision",
    [
        (RunStatus.SELECT, Rediscover(())),
        (RunStatus.VERIFY, DeepenExtraction(())),
        (RunStatus.RENDER, AdversarialResynthesis()),
    ],
)
def test_loops_are_only_valid_after_their_own_stage(stage, decision):
    with pytest.raises(InvalidTransition):
        transition(stage, decision)


def test_queue_names_map_back_to_stages():
    assert stage_for_queue("verify") == RunStatus.VERIFY
    assert stage_for_queue("signals") is None
    assert RunStatus.DEDUPLICATE.queue == "deduplicate"


# =============================================================================
# QUALITY GATES
# =============================================================================

def test_discovery_gate():
    assert isinstance(assess_discovery(3, 1, [], CONFIG), Proceed)

    first_pass = assess_discovery(1, 1, ["carbon levy"], CONFIG)
    assert isinstance(first_pass, Rediscover)
    assert first_pass.terms == ("carbon levy",)

    assert assess_discovery(0, 2, [], CONFIG) == Fail(INSUFFICIENT_SOURCES)
    assert isinstance(assess_discovery(2, 2, [], CONFIG), Proceed)


def test_selection_gate():
    assert isinstance(assess_selection(0), Fail)
    assert isinstance(assess_selection(4), Proceed)


def test_extraction_gate_deepens_weakest_sources_once():
    confidences = {"a": 0.2, "b": 0.9, "c": 0.1, "d": 0.3, "e": 0.2}

    decision = assess_extraction(confidences, deep_extraction_done=False, config=CONFIG)
    assert isinstance(decision, DeepenExtraction)
    assert decision.source_ids == ("c", "a", "e")

    assert isinstance(assess_extraction(confidences, deep_extraction_done=True, config=CONFIG), Proceed)
    assert isinstance(assess_extraction({"a": 0.8}, deep_extraction_done=False, config=CONFIG), Proceed)


def test_verification_gate_allows_one_adversarial_pass():
    assert isinstance(assess_verification(0.8, 0.0, 0, [], CONFIG), Proceed)

    first = assess_verification(0.3, 0.0, 0, ["weak claim"], CONFIG)
    assert isinstance(first, AdversarialResynthesis)
    assert first.focus == ("weak claim",)
    assert "trust 0.30 below floor 0.50" in first.reason

    second = assess_verification(0.3, 0.0, 1, ["weak claim"], CONFIG)
    assert isinstance(second, Reject)
    assert "after adversarial re-synthesis" in second.reason


def test_contradiction_rate_alone_can_trigger_the_gate():
    decision = assess_verification(0.9, 0.5, 0, [], CONFIG)
    assert isinstance(decision, AdversarialResynthesis)
    assert "contradiction rate 0.50" in decision.reason


# =============================================================================
# NEXT PAYLOADS AND THE DECISION LOG
# =============================================================================

RUN = SimpleNamespace(id="run-1", correlation_id="cid-1")


def test_next_payload_carries_the_decision():
    rediscover = next_payload(RunStatus.DISCOVER, RUN, Rediscover(("carbon levy",)))
    assert rediscover == DiscoverPayload(run_id="run-1", correlation_id="cid-1", broadened=True, terms=["carbon levy"])

    deepen = next_payload(RunStatus.EXTRACT, RUN, DeepenExtraction(("s1", "s2")))
    assert isinstance(deepen, ExtractPayload)
    assert deepen.deep_source_ids == ["s1", "s2"]

    adversarial = next_payload(RunStatus.SYNTHESIZE, RUN, AdversarialResynthesis(("weak",)))
    assert isinstance(adversarial, SynthesizePayload)
    assert adversarial.adversarial and adversarial.focus == ["weak"]

    plain = next_payload(RunStatus.VERIFY, RUN, Proceed())
    assert isinstance(plain, VerifyPayload)


def test_log_entry_is_json_ready():
    entry = log_entry(
        RunStatus.DISCOVER,
        Rediscover(("carbon levy", "emissions pricing"), "only 1 of 3 required sources"),
        RunStatus.DISCOVER,
        sources_found=1,
    )

    assert entry["stage"] == "DISCOVER"
    assert entry["decision"] == "REDISCOVER"
    assert entry["reason"] == "only 1 of 3 required sources"
    assert entry["next_status"] == "DISCOVER"
    assert entry["details"] == {"terms": ["carbon levy", "emissions pricing"], "sources_found": 1}
    assert "at" in entry
