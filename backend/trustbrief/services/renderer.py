"""
Brief Renderer.

Turns a verified run into the markdown brief users read:

    # <question>
    Trust / quality / evidence / contradiction summary
    ## Analysis          (the synthesis, [SRC-n] markers kept)
    ## Claims            (each with trust, status and its best evidence quote)
    ## Sources           ([SRC-n] → title, year, provider, link)
    ## Decision log      (every gate decision with its reason)

Only claims that survived verification are rendered; superseded claims
stay in the database for audit but never reach the brief.
"""

from trustbrief.models.claim import Claim, ClaimStatus
from trustbrief.models.run import AnalysisRun
from trustbrief.models.source import Source

MAX_QUOTE_CHARS = 240


def trust_label(score: float | None) -> str:
    if score is None:
        return "unscored"
    if score >= 0.7:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"


def _pct(value: float | None) -> str:
    return "n/a" if value is None else f"{value * 100:.0f}%"


def _quote(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > MAX_QUOTE_CHARS:
        text = text[: MAX_QUOTE_CHARS - 3] + "..."
    return text


def render_brief(run: AnalysisRun, claims: list[Claim], sources: list[Source]) -> str:
    index_of = {source.id: i for i, source in enumerate(sources, start=1)}
    lines = [
        f"# {run.question}",
        "",
        f"**Trust:** {_pct(run.trust_score)} ({trust_label(run.trust_score)}) · "
        f"**Source quality:** {_pct(run.quality_score)} · "
        f"**Evidence strength:** {_pct(run.evidence_strength)} · "
        f"**Contradictions:** {_pct(run.contradiction_rate)} · "
        f"**Citation integrity:** {_pct(run.citation_integrity)}",
        "",
        "## Analysis",
        "",
        (run.analysis_text or "").strip(),
        "",
        "## Claims",
        "",
    ]

    live = [c for c in claims if c.verification_status != ClaimStatus.SUPERSEDED]
    if not live:
        lines.append("_No verifiable claims were extracted._")
    for number, claim in enumerate(live, start=1):
        flag = " ⚠ contradicted" if claim.has_contradiction else ""
        lines.append(
            f"{number}. {claim.text} (trust {_pct(claim.trust_score)}, "
            f"{claim.verification_status}, {claim.evidence_count} evidence span(s)){flag}"
        )
        if claim.evidence:
            best = claim.evidence[0]
            ref = index_of.get(best.source_id)
            marker = f"[SRC-{ref}]" if ref else "[source]"
            lines.append(f"   > \"{_quote(best.text)}\" {marker}")

    lines += ["", "## Sources", ""]
    for i, source in enumerate(sources, start=1):
        year = f" ({source.year})" if source.year else ""
        link = f" {source.url}" if source.url else ""
        lines.append(f"- [SRC-{i}] {source.title}{year}, {source.provider}{link}")

    lines += ["", "## Decision log", ""]
    for entry in run.decision_log or []:
        lines.append(f"- **{entry['stage']}** → {entry['decision']} ({entry['next_status']}): {entry['reason']}")

    return "\n".join(lines).rstrip() + "\n"
