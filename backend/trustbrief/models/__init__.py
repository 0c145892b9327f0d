# Database models and API schemas
from trustbrief.models.run import AnalysisRun
from trustbrief.models.source import Source
from trustbrief.models.claim import Claim, ClaimStatus, EvidenceSpan
from trustbrief.models.job import JobRecord
from trustbrief.models.signal import Signal

__all__ = [
    "AnalysisRun",
    "Source",
    "Claim",
    "ClaimStatus",
    "EvidenceSpan",
    "JobRecord",
    "Signal",
]
