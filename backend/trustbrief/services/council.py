"""
Council - multi-perspective deliberation before synthesis.

WHAT THIS DOES:
In council mode, several analysts each read ALL selected sources through
one lens (economic, environmental, social, ...) and argue what the sources
say from that angle. Their arguments are handed to the synthesizer, which
writes the final cited analysis.

HOW IT WORKS:
1. Pick perspectives (configurable, default: economic, environmental, social)
2. Run all analysts in parallel (asyncio.gather)
3. Keep only citations that point at real source numbers
4. Build a transcript for the synthesizer and for the audit trail

USAGE:
    council = Council(gateway)
    result = await council.deliberate(question, sources)
    print(result.transcript)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from trustbrief.errors import AllProvidersFailedError
from trustbrief.services.gateway import CallGateway, LLMRequest
from trustbrief.services.synthesizer import SynthesisSource, format_sources
from trustbrief.services.trust.lexical import cited_indices

logger = logging.getLogger(__name__)

DEFAULT_PERSPECTIVES = ("economic", "environmental", "social")

ANALYST_PROMPT = """You are a research analyst on a review council. You examine the sources strictly from the {perspective} perspective.

RULES:
1. ONLY use evidence from the sources provided
2. Cite every statement using [SRC-n] format
3. Be specific: quote key figures and findings
4. Acknowledge limitations in the evidence honestly

OUTPUT FORMAT (JSON):
{{
    "argument": "2 short paragraphs on what the sources show from the {perspective} perspective",
    "key_findings": ["Finding with data [SRC-n]"],
    "confidence": 0.0-1.0
}}"""


@dataclass
class PerspectiveResponse:
    perspective: str
    argument: str
    key_findings: list[str] = field(default_factory=list)
    confidence: float = 0.0
    cited: list[int] = field(default_factory=list)


@dataclass
class CouncilResult:
    responses: list[PerspectiveResponse]
    transcript: str
    metadata: dict = field(default_factory=dict)

    @property
    def average_confidence(self) -> float:
        if not self.responses:
            return 0.0
        return sum(r.confidence for r in self.responses) / len(self.responses)


def _build_transcript(responses: list[PerspectiveResponse]) -> str:
    lines = []
    for response in responses:
        lines.append(f"### {response.perspective.upper()} (confidence {response.confidence:.2f})")
        lines.append(response.argument)
        lines.extend(f"  - {finding}" for finding in response.key_findings)
        lines.append("")
    return "\n".join(lines).strip()


class Council:
    def __init__(self, gateway: CallGateway, perspectives: tuple[str, ...] = DEFAULT_PERSPECTIVES):
        self.gateway = gateway
        self.perspectives = perspectives or DEFAULT_PERSPECTIVES

    async def deliberate(
        self,
        question: str,
        sources: list[SynthesisSource],
        correlation_id: Optional[str] = None,
    ) -> CouncilResult:
        start_time = time.time()
        context = format_sources(sources)
        valid = {s.index for s in sources}

        responses = await asyncio.gather(
            *(self._argue(p, question, context, valid, correlation_id) for p in self.perspectives)
        )
        responses = [r for r in responses if r is not None]
        logger.info(f"Council deliberated with {len(responses)} perspective(s) in {time.time() - start_time:.2f}s")
        return CouncilResult(
            responses=responses,
            transcript=_build_transcript(responses),
            metadata={"perspectives": list(self.perspectives), "seconds": round(time.time() - start_time, 2)},
        )

    async def _argue(
        self,
        perspective: str,
        question: str,
        context: str,
        valid: set[int],
        correlation_id: Optional[str],
    ) -> Optional[PerspectiveResponse]:
        try:
            response = await self.gateway.call(
                LLMRequest.simple(
                    ANALYST_PROMPT.format(perspective=perspective),
                    f"QUESTION: {question}\n\nSOURCES:\n{context}",
                    json_mode=True,
                    temperature=0.3,
                    max_tokens=900,
                    purpose=f"council_{perspective}",
                    correlation_id=correlation_id,
                )
            )
            data = response.json()
        except (AllProvidersFailedError, ValueError) as e:
            # One silent analyst doesn't stop the council
            logger.error(f"Council analyst '{perspective}' failed: {e}")
            return None

        argument = str(data.get("argument", ""))
        findings = [str(f) for f in data.get("key_findings", []) if isinstance(f, str)]
        cited = [i for i in cited_indices(argument + " " + " ".join(findings)) if i in valid]
        try:
            confidence = min(1.0, max(0.0, float(data.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5
        return PerspectiveResponse(perspective, argument, findings, confidence, cited)
