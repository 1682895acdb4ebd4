"""Relevance, dedup and quality scoring for research findings.

Relevance is a pluggable strategy: anything with ``score(query, content)``
returning 0..1 works. The default is keyword overlap.
"""

import re
from hashlib import sha256
from typing import Protocol

_TOKEN = re.compile(r"[a-z0-9]+")
_NON_WORD = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE = re.compile(r"[^.!?]+[.!?]?")

STOPWORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had", "her",
        "was", "one", "our", "out", "has", "have", "what", "when", "where", "which", "who",
        "why", "how", "this", "that", "with", "from", "they", "will", "would", "there",
        "their", "about", "could", "should", "please", "tell", "give", "show", "does",
        "did", "into", "your", "been", "being", "also", "than", "then", "them", "these",
        "those", "some", "such", "only", "other", "more", "most", "very", "just", "find",
    }
)


def tokenize(text: str) -> set[str]:
    return {
        token
        for token in _TOKEN.findall(text.lower())
        if len(token) >= 3 and token not in STOPWORDS
    }


class RelevanceScorer(Protocol):
    def score(self, query: str, content: str) -> float: ...


class KeywordOverlapScorer:
    """Share of query keywords present in the content."""

    def score(self, query: str, content: str) -> float:
        query_tokens = tokenize(query)
        if not query_tokens:
            return 0.0
        return len(query_tokens & tokenize(content)) / len(query_tokens)


def normalize_content(content: str) -> str:
    lowered = _NON_WORD.sub(" ", content.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def fingerprint(content: str) -> str:
    return sha256(normalize_content(content).encode("utf-8")).hexdigest()


def query_term_coverage(query: str, text: str) -> float:
    return KeywordOverlapScorer().score(query, text) if tokenize(query) else 1.0


def coherence(text: str) -> float:
    """Crude 0..1 readability signal: enough prose, little repetition."""
    sentences = [s.strip() for s in _SENTENCE.findall(text) if len(s.strip().split()) >= 3]
    if not sentences:
        return 0.0
    normalized = [normalize_content(s) for s in sentences]
    uniqueness = len(set(normalized)) / len(normalized)
    words = sum(len(s.split()) for s in sentences)
    length_factor = min(1.0, words / 25)
    avg_sentence = words / len(sentences)
    run_on_penalty = 0.7 if avg_sentence > 60 else 1.0
    return round(uniqueness * length_factor * run_on_penalty, 4)


def citation_coverage(cited_flags: list[bool]) -> float:
    if not cited_flags:
        return 0.0
    return sum(1 for flag in cited_flags if flag) / len(cited_flags)


def quality_score(
    query: str,
    summary: str,
    cited_flags: list[bool],
) -> float:
    """Citation coverage x coherence x query-term coverage, rounded."""
    score = (
        citation_coverage(cited_flags)
        * coherence(summary)
        * query_term_coverage(query, summary)
    )
    return round(max(0.0, min(1.0, score)), 4)
