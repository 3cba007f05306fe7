"""Prompt complexity scoring used to choose the aggregator provider."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict

MAX_DIMENSION_SCORE = 3

_LIST_ITEM = re.compile(r"(?:^|\n)\s*[-*•]|\d+\.", re.MULTILINE)
_QUESTION = re.compile(r"[?？]")

_WHY = re.compile(r"\b(why|reason|rationale|background)\b", re.IGNORECASE)
_HOW = re.compile(r"\b(how|method|steps?|process)\b", re.IGNORECASE)
_COMPARE = re.compile(r"\b(compare|comparison|evaluate|trade-?offs?)\b", re.IGNORECASE)
_DESIGN = re.compile(r"\b(design|architecture|structure)\b", re.IGNORECASE)

DOMAIN_PATTERNS: Dict[str, re.Pattern[str]] = {
    "tech": re.compile(r"\b(code|implement\w*|program\w*)\b", re.IGNORECASE),
    "business": re.compile(r"\b(business|strategy|roi|cost)\b", re.IGNORECASE),
    "security": re.compile(r"\b(security|vulnerabilit\w*|risk)\b", re.IGNORECASE),
    "performance": re.compile(r"\b(performance|optimi[sz]\w*|scal\w*)\b", re.IGNORECASE),
    "ops": re.compile(r"\b(operations?|monitoring|maintenance)\b", re.IGNORECASE),
}


@dataclass(frozen=True)
class ComplexityScore:
    structural: int
    cognitive: int
    domain: int

    @property
    def total(self) -> int:
        return self.structural + self.cognitive + self.domain

    def to_dict(self) -> Dict[str, int]:
        return {
            "structural": self.structural,
            "cognitive": self.cognitive,
            "domain": self.domain,
            "total": self.total,
        }


def structural_complexity(prompt: str) -> int:
    """Length, list structure and number of questions."""
    score = 0
    if len(prompt) > 800:
        score += 2
    elif len(prompt) > 400:
        score += 1

    list_items = len(_LIST_ITEM.findall(prompt))
    if list_items > 5:
        score += 2
    elif list_items > 2:
        score += 1

    questions = len(_QUESTION.findall(prompt))
    if questions > 4:
        score += 2
    elif questions > 2:
        score += 1
    return min(score, MAX_DIMENSION_SCORE)


def cognitive_depth(prompt: str) -> int:
    """Depth of reasoning asked for."""
    score = 0
    if _WHY.search(prompt):
        score += 1
    if _HOW.search(prompt):
        score += 1
    if _COMPARE.search(prompt):
        score += 2
    if _DESIGN.search(prompt):
        score += 1
    return min(score, MAX_DIMENSION_SCORE)


def domain_breadth(prompt: str) -> int:
    """Number of distinct domains touched; a single domain scores nothing."""
    domains = sum(1 for pattern in DOMAIN_PATTERNS.values() if pattern.search(prompt))
    if domains >= 3:
        return 3
    if domains == 2:
        return 2
    return 0


def score_complexity(prompt: str) -> ComplexityScore:
    return ComplexityScore(
        structural=structural_complexity(prompt),
        cognitive=cognitive_depth(prompt),
        domain=domain_breadth(prompt),
    )
