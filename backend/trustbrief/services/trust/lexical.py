"""
Lexical helpers shared by the trust services.

Everything here is pure and deterministic: tokenising, sentence splitting
with character offsets, term overlap, number extraction and a crude
polarity model (negation + direction of change). The evidence binder, the
citation verifier and the contradiction detector all score text with these
same functions, so their numbers are comparable.
"""

import re
from dataclasses import dataclass

# Lowercase words and numbers; "2.5" and "1,000" stay one token
TOKEN_RE = re.compile(r"[a-z0-9]+(?:[.,][0-9]+)*")

NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")

CITATION_RE = re.compile(r"\[SRC-(\d+)\]")

# Sentence ends at ./!/? (plus closing quotes/brackets) followed by whitespace.
# "2.5" never splits because the dot is not followed by whitespace.
_BOUNDARY_RE = re.compile(r"[.!?]+[\"')\]]*\s+")

STOPWORDS = frozenset("""
a about above after again against all also am an and any are as at be because been before being
below between both but by can could did do does doing down during each few for from further had
has have having he her here hers him his how i if in into is it its itself just me might more most
my no nor not of off on once only or other our out over own same she should so some such than that
the their them then there these they this those through to too under until up upon very was we were
what when where which while who whom why will with within would you your per via among across
""".split())

NEGATIONS = frozenset({
    "not", "no", "never", "none", "neither", "nor", "without", "cannot",
    "fail", "fails", "failed", "lack", "lacks", "lacked",
    "isn't", "aren't", "wasn't", "weren't", "doesn't", "didn't", "don't", "won't",
})

INCREASE_TERMS = frozenset({
    "increase", "increases", "increased", "increasing", "rise", "rises", "rose", "risen",
    "higher", "grow", "grows", "grew", "growth", "boost", "boosted", "raise", "raised",
    "improve", "improved", "improves", "expand", "expanded", "gain", "gains",
})

DECREASE_TERMS = frozenset({
    "decrease", "decreases", "decreased", "decreasing", "reduce", "reduces", "reduced", "reduction",
    "lower", "lowered", "decline", "declined", "declines", "fall", "falls", "fell", "drop", "dropped",
    "cut", "cuts", "shrink", "shrank", "worsen", "worsened", "loss", "losses",
})


@dataclass(frozen=True)
class Sentence:
    """A sentence and its [start, end) character offsets in the original text."""
    start: int
    end: int
    text: str


def tokenize(text: str) -> list[str]:
    return TOKEN_RE.findall(text.lower())


def _stem(token: str) -> str:
    # Just enough folding for "taxes"/"tax", "policies"/"policy", "emissions"/"emission"
    if token[0].isdigit():
        return token
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 4 and token.endswith(("ses", "xes", "zes", "ches", "shes")):
        return token[:-2]
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def content_terms(text: str) -> set[str]:
    """Stemmed, stopword-free terms. Citation markers are ignored."""
    text = CITATION_RE.sub(" ", text)
    terms = set()
    for token in tokenize(text):
        if token in STOPWORDS:
            continue
        if len(token) < 3 and not token[0].isdigit():
            continue
        if token == "src":
            continue
        terms.add(_stem(token))
    return terms


def overlap(claim_terms: set[str], other_terms: set[str]) -> float:
    """Share of the claim's terms found in the other text (0-1)."""
    if not claim_terms:
        return 0.0
    return len(claim_terms & other_terms) / len(claim_terms)


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def numbers(text: str) -> set[str]:
    text = CITATION_RE.sub(" ", text)
    return {n.replace(",", "") for n in NUMBER_RE.findall(text)}


def cited_indices(text: str) -> list[int]:
    """1-based [SRC-n] indices in order of first appearance."""
    seen: list[int] = []
    for match in CITATION_RE.finditer(text):
        index = int(match.group(1))
        if index not in seen:
            seen.append(index)
    return seen


def strip_citations(text: str) -> str:
    return re.sub(r"\s+", " ", CITATION_RE.sub("", text)).strip()


def split_sentences(text: str) -> list[Sentence]:
    sentences: list[Sentence] = []
    start = 0
    for match in _BOUNDARY_RE.finditer(text):
        end = match.start() + len(match.group().rstrip())
        _append_sentence(sentences, text, start, end)
        start = match.end()
    _append_sentence(sentences, text, start, len(text))
    return sentences


def _append_sentence(sentences: list[Sentence], text: str, start: int, end: int) -> None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if end > start:
        sentences.append(Sentence(start, end, text[start:end]))


def negated(text: str) -> bool:
    tokens = re.findall(r"[a-z']+", text.lower())
    return sum(1 for t in tokens if t in NEGATIONS or t.endswith("n't")) % 2 == 1


def direction(text: str) -> int:
    """+1 for increase language, -1 for decrease language, 0 when absent or mixed."""
    tokens = set(tokenize(text))
    up = bool(tokens & INCREASE_TERMS)
    down = bool(tokens & DECREASE_TERMS)
    if up == down:
        return 0
    return 1 if up else -1


def opposed(a: str, b: str) -> bool:
    """
    True when two statements about the same thing point opposite ways:
    one is negated and the other isn't, or they report opposite directions.
    Callers must check topical overlap first; this only looks at polarity.
    """
    if negated(a) != negated(b):
        return True
    da, db = direction(a), direction(b)
    return da != 0 and db != 0 and da != db
