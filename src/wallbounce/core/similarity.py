"""Lexical similarity between provider responses.

Both measures are symmetric and bounded to [0, 1]. Two empty texts are
considered identical (1.0); an empty text against a non-empty one scores 0.0.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from itertools import combinations
from typing import Callable, Dict, List, Sequence, Tuple

SimilarityFunc = Callable[[str, str], float]

_TOKEN_SPLIT = re.compile(r"\W+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens."""
    return [token for token in _TOKEN_SPLIT.split(text.lower()) if token]


def jaccard_similarity(a: str, b: str) -> float:
    """Size of the shared vocabulary over the combined vocabulary."""
    tokens_a, tokens_b = set(tokenize(a)), set(tokenize(b))
    if not tokens_a and not tokens_b:
        return 1.0
    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def cosine_similarity(a: str, b: str) -> float:
    """Cosine of the term-frequency vectors."""
    counts_a, counts_b = Counter(tokenize(a)), Counter(tokenize(b))
    if not counts_a and not counts_b:
        return 1.0
    if not counts_a or not counts_b:
        return 0.0
    dot = sum(counts_a[token] * counts_b[token] for token in counts_a.keys() & counts_b.keys())
    norm = math.sqrt(sum(v * v for v in counts_a.values())) * math.sqrt(sum(v * v for v in counts_b.values()))
    # Clamp float error so identical texts score exactly 1.0.
    return min(1.0, max(0.0, dot / norm))


SIMILARITY_FUNCTIONS: Dict[str, SimilarityFunc] = {
    "jaccard": jaccard_similarity,
    "cosine": cosine_similarity,
}


def get_similarity(name: str) -> SimilarityFunc:
    try:
        return SIMILARITY_FUNCTIONS[name]
    except KeyError:
        raise ValueError(f"Unknown similarity measure '{name}'") from None


def pairwise_matrix(texts: Sequence[str], func: SimilarityFunc) -> List[List[float]]:
    """Full symmetric similarity matrix with 1.0 on the diagonal."""
    size = len(texts)
    matrix = [[1.0] * size for _ in range(size)]
    for i, j in combinations(range(size), 2):
        score = func(texts[i], texts[j])
        matrix[i][j] = matrix[j][i] = score
    return matrix


def pairs(matrix: Sequence[Sequence[float]]) -> List[Tuple[int, int, float]]:
    return [(i, j, matrix[i][j]) for i, j in combinations(range(len(matrix)), 2)]
