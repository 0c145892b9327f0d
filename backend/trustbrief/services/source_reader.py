"""
Source Reader Service.

WHAT THIS DOES:
Reads one source and extracts what the synthesis needs from it: key
findings, methods, results, and a confidence that the extraction is
complete and accurate.

HOW IT WORKS:
1. Ask the LLM (JSON mode) for {"findings", "methods", "results", "confidence"}
2. Validate the output; if it's unusable or no provider answers, fall back
   to a heuristic read (result-bearing sentences become findings) with a
   confidence that reflects how little we could get
3. Deep mode reads the full text instead of the abstract

USAGE:
    reader = SourceReader(gateway)
    extractions = await reader.read_many(sources, correlation_id=run.correlation_id)
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from trustbrief.errors import AllProvidersFailedError
from trustbrief.services.gateway import CallGateway, LLMRequest
from trustbrief.services.trust.lexical import split_sentences

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 12000
MAX_FINDINGS = 6

FINDING_RE = re.compile(
    r"\b(found|find|show|shows|showed|suggest|suggests|indicate|indicates|reduced|increased|"
    r"decreased|improved|associated|estimate|estimated|results?|evidence)\b",
    re.IGNORECASE,
)
METHOD_RE = re.compile(
    r"\b(we (?:use|used|estimate|analy[sz]e)|using|panel|regression|survey|trial|model|dataset|sample)\b",
    re.IGNORECASE,
)

READER_PROMPT = """You are a research analyst extracting structured information from one source.

RULES:
1. Use ONLY the text provided
2. findings: 1-6 key findings, each one sentence, quoting figures exactly
3. methods: one sentence on how the study was done ("" if not stated)
4. results: one sentence with the headline result ("" if not stated)
5. confidence: 0-1, how completely the text let you answer

OUTPUT FORMAT (JSON):
{"findings": ["..."], "methods": "...", "results": "...", "confidence": 0.8}"""


class ReaderOutput(BaseModel):
    findings: list[str] = Field(default_factory=list, max_length=20)
    methods: str = ""
    results: str = ""
    confidence: float = Field(ge=0, le=1)


@dataclass
class ReadableSource:
    id: str
    title: str
    text: str


@dataclass
class Extraction:
    source_id: str
    findings: list[str] = field(default_factory=list)
    methods: str = ""
    results: str = ""
    confidence: float = 0.0
    extracted_by: str = "heuristic"

    def as_dict(self) -> dict:
        return {
            "findings": self.findings,
            "methods": self.methods,
            "results": self.results,
            "extracted_by": self.extracted_by,
        }


def read_heuristically(source: ReadableSource) -> Extraction:
    sentences = [s.text for s in split_sentences(source.text)]
    findings = [s for s in sentences if FINDING_RE.search(s)][:MAX_FINDINGS]
    methods = next((s for s in sentences if METHOD_RE.search(s)), "")

    # Abstract-only reads of short texts can't be trusted much
    confidence = 0.2 + 0.1 * len(findings) + (0.1 if methods else 0.0)
    if len(source.text) < 400:
        confidence -= 0.1
    return Extraction(
        source_id=source.id,
        findings=findings,
        methods=methods,
        results=findings[0] if findings else "",
        confidence=round(max(0.05, min(0.6, confidence)), 3),
        extracted_by="heuristic",
    )


class SourceReader:
    def __init__(self, gateway: Optional[CallGateway] = None, concurrency: int = 5):
        self.gateway = gateway
        self.concurrency = concurrency

    async def read(self, source: ReadableSource, correlation_id: Optional[str] = None) -> Extraction:
        if self.gateway is None or not source.text.strip():
            return read_heuristically(source)

        try:
            response = await self.gateway.call(
                LLMRequest.simple(
                    READER_PROMPT,
                    f"TITLE: {source.title}\n\nTEXT:\n{source.text[:MAX_INPUT_CHARS]}",
                    json_mode=True,
                    temperature=0.1,
                    max_tokens=800,
                    purpose="source_extraction",
                    correlation_id=correlation_id,
                )
            )
        except AllProvidersFailedError as e:
            logger.warning(f"LLM extraction unavailable for {source.id}, reading heuristically: {e}")
            return read_heuristically(source)

        try:
            output = ReaderOutput.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Unusable extraction for {source.id}, reading heuristically: {e}")
            return read_heuristically(source)

        return Extraction(
            source_id=source.id,
            findings=[f for f in output.findings if f.strip()][:MAX_FINDINGS],
            methods=output.methods,
            results=output.results,
            confidence=output.confidence,
            extracted_by="llm",
        )

    async def read_many(
        self,
        sources: list[ReadableSource],
        correlation_id: Optional[str] = None,
    ) -> list[Extraction]:
        """Read sources in parallel, at most `concurrency` at a time."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(source: ReadableSource) -> Extraction:
            async with semaphore:
                return await self.read(source, correlation_id)

        return list(await asyncio.gather(*(bounded(s) for s in sources)))
