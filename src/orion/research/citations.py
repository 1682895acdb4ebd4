"""Numbered citation bookkeeping for synthesized answers."""

import re

_MARKER = re.compile(r"\[(\d{1,3})\]")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


class CitationRegistry:
    """Assigns stable 1-based numbers to source strings in first-seen order."""

    def __init__(self) -> None:
        self._numbers: dict[str, int] = {}

    def add(self, source: str) -> int:
        key = source.strip()
        if key not in self._numbers:
            self._numbers[key] = len(self._numbers) + 1
        return self._numbers[key]

    def number(self, source: str) -> int | None:
        return self._numbers.get(source.strip())

    @property
    def sources(self) -> list[str]:
        return list(self._numbers)

    def __len__(self) -> int:
        return len(self._numbers)


def extract_citation_markers(text: str) -> list[int]:
    return [int(match) for match in _MARKER.findall(text)]


def valid_markers(text: str, source_count: int) -> list[int]:
    return [n for n in extract_citation_markers(text) if 1 <= n <= source_count]


def uncited_sentences(text: str, *, min_words: int = 6) -> list[str]:
    """Substantive sentences that carry no ``[n]`` marker."""
    uncited: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(text.strip()):
        stripped = sentence.strip()
        if len(stripped.split()) < min_words:
            continue
        if not _MARKER.search(stripped):
            uncited.append(stripped)
    return uncited


def render_sources(sources: list[str]) -> str:
    return "\n".join(f"[{index}] {source}" for index, source in enumerate(sources, start=1))
