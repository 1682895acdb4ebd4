"""Local knowledge directory scanned as a research source."""

import logging
from dataclasses import dataclass
from pathlib import Path

from orion.research.scoring import KeywordOverlapScorer, RelevanceScorer, tokenize

logger = logging.getLogger(__name__)

KNOWLEDGE_EXTENSIONS = frozenset({".md", ".txt", ".yaml", ".yml", ".json"})
EXCERPT_CHARS = 600


@dataclass(slots=True, frozen=True)
class KnowledgeHit:
    path: str
    excerpt: str
    score: float


def find_excerpt(text: str, query_tokens: set[str], *, max_chars: int = EXCERPT_CHARS) -> str:
    """Window around the paragraph sharing the most query keywords."""
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    if not paragraphs:
        return ""
    best_index = max(
        range(len(paragraphs)),
        key=lambda i: (len(tokenize(paragraphs[i]) & query_tokens), -i),
    )
    excerpt = paragraphs[best_index]
    if best_index + 1 < len(paragraphs) and len(excerpt) < max_chars // 2:
        excerpt = f"{excerpt}\n\n{paragraphs[best_index + 1]}"
    if len(excerpt) > max_chars:
        excerpt = excerpt[:max_chars].rstrip() + "..."
    return excerpt


class KnowledgeSource:
    def __init__(
        self,
        root: str | Path,
        *,
        max_files: int = 200,
        max_file_bytes: int = 262144,
        max_depth: int = 4,
        scorer: RelevanceScorer | None = None,
    ) -> None:
        self.root = Path(root)
        self.max_files = max_files
        self.max_file_bytes = max_file_bytes
        self.max_depth = max_depth
        self.scorer = scorer or KeywordOverlapScorer()

    @property
    def available(self) -> bool:
        return self.root.is_dir()

    def _candidate_files(self) -> list[Path]:
        files: list[Path] = []
        pending: list[tuple[Path, int]] = [(self.root, 0)]
        while pending and len(files) < self.max_files:
            directory, depth = pending.pop(0)
            try:
                entries = sorted(directory.iterdir())
            except OSError as exc:
                logger.warning("Cannot list knowledge dir path=%s error=%s", directory, exc)
                continue
            for entry in entries:
                if entry.name.startswith("."):
                    continue
                if entry.is_dir():
                    if depth + 1 <= self.max_depth:
                        pending.append((entry, depth + 1))
                    continue
                if entry.suffix.lower() not in KNOWLEDGE_EXTENSIONS:
                    continue
                try:
                    if entry.stat().st_size > self.max_file_bytes:
                        continue
                except OSError:
                    continue
                files.append(entry)
                if len(files) >= self.max_files:
                    break
        return files

    def search(self, query: str, *, limit: int = 5, min_score: float = 0.0) -> list[KnowledgeHit]:
        """Blocking scan; callers run it in a worker thread."""
        if not self.available:
            return []
        query_tokens = tokenize(query)
        hits: list[KnowledgeHit] = []
        for path in self._candidate_files():
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.warning("Cannot read knowledge file path=%s error=%s", path, exc)
                continue
            name_hint = path.stem.replace("-", " ").replace("_", " ")
            score = self.scorer.score(query, f"{name_hint}\n{text}")
            if score <= min_score:
                continue
            hits.append(
                KnowledgeHit(
                    path=str(path.relative_to(self.root)),
                    excerpt=find_excerpt(text, query_tokens),
                    score=round(score, 4),
                )
            )
        hits.sort(key=lambda hit: (-hit.score, hit.path))
        return hits[:limit]
