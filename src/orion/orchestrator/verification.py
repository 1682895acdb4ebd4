"""Post-answer checks run before a reply leaves the loop."""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from orion.research.citations import extract_citation_markers, uncited_sentences
from orion.research.scoring import tokenize

Severity = Literal["error", "warning"]

MIN_ANSWER_CHARS = 2
MAX_UNCITED_CLAIMS = 2
_INTERNAL_ERROR_PATTERNS = (
    re.compile(r"Traceback \(most recent call last\)"),
    re.compile(r"\bFile \"[^\"]+\", line \d+"),
    re.compile(r"\b[A-Z][A-Za-z]+(?:Error|Exception): "),
    re.compile(r"\bJSON-?RPC error\b", re.IGNORECASE),
)
_SECRET_PATTERNS = (
    re.compile(r"\bsk-[A-Za-z0-9_-]{16,}"),
    re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]{16,}=*"),
    re.compile(r"\b(?:api[_-]?key|password|secret)\s*[:=]\s*\S{6,}", re.IGNORECASE),
)


@dataclass(slots=True)
class RuleResult:
    rule: str
    passed: bool
    severity: Severity
    message: str = ""


@dataclass(slots=True)
class VerificationResult:
    passed: bool
    results: list[RuleResult] = field(default_factory=list)

    @property
    def issues(self) -> list[str]:
        return [f"{r.rule}: {r.message}" for r in self.results if not r.passed]

    @property
    def errors(self) -> list[RuleResult]:
        return [r for r in self.results if not r.passed and r.severity == "error"]

    def as_dict(self) -> dict[str, object]:
        return {"passed": self.passed, "issues": self.issues}


@dataclass(slots=True)
class VerificationInput:
    answer: str
    question: str
    expects_citations: bool = False


Rule = Callable[[VerificationInput], RuleResult]


def not_empty(data: VerificationInput) -> RuleResult:
    ok = len(data.answer.strip()) >= MIN_ANSWER_CHARS
    return RuleResult("not_empty", ok, "error", "" if ok else "answer is empty")


def no_internal_errors(data: VerificationInput) -> RuleResult:
    for pattern in _INTERNAL_ERROR_PATTERNS:
        if pattern.search(data.answer):
            return RuleResult(
                "no_internal_errors", False, "error", "answer exposes internal error details"
            )
    return RuleResult("no_internal_errors", True, "error")


def no_secrets(data: VerificationInput) -> RuleResult:
    for pattern in _SECRET_PATTERNS:
        if pattern.search(data.answer):
            return RuleResult("no_secrets", False, "error", "answer contains a credential")
    return RuleResult("no_secrets", True, "error")


def addresses_question(data: VerificationInput) -> RuleResult:
    asked = tokenize(data.question)
    if not asked:
        return RuleResult("addresses_question", True, "warning")
    answered = tokenize(data.answer)
    overlap = len(asked & answered) / len(asked)
    ok = overlap >= 0.2 or len(asked) <= 2
    return RuleResult(
        "addresses_question",
        ok,
        "warning",
        "" if ok else "answer shares few terms with the question",
    )


def cites_sources(data: VerificationInput) -> RuleResult:
    if not data.expects_citations:
        return RuleResult("cites_sources", True, "warning")
    if not extract_citation_markers(data.answer):
        return RuleResult("cites_sources", False, "warning", "answer uses sources but cites none")
    uncited = uncited_sentences(data.answer)
    if len(uncited) > MAX_UNCITED_CLAIMS:
        return RuleResult(
            "cites_sources", False, "warning", f"{len(uncited)} claims carry no citation"
        )
    return RuleResult("cites_sources", True, "warning")


DEFAULT_RULES: tuple[Rule, ...] = (
    not_empty,
    no_internal_errors,
    no_secrets,
    addresses_question,
    cites_sources,
)


def verify_answer(
    answer: str,
    question: str,
    *,
    expects_citations: bool = False,
    rules: tuple[Rule, ...] = DEFAULT_RULES,
) -> VerificationResult:
    data = VerificationInput(answer=answer, question=question, expects_citations=expects_citations)
    results = [rule(data) for rule in rules]
    passed = not any(not r.passed and r.severity == "error" for r in results)
    return VerificationResult(passed=passed, results=results)


def revision_feedback(result: VerificationResult) -> str:
    lines = [
        "Your previous answer failed these checks. Rewrite it so every check passes, "
        "keeping the same facts:"
    ]
    lines.extend(f"- {issue}" for issue in result.issues)
    lines.append("Do not include error traces, internal codes or credentials.")
    return "\n".join(lines)
