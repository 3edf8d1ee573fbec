"""
Category Embedding Table — static category → semantic vector lookup.

Axes: [tech, fashion, media, sports, home]. Unknown categories fall back to
the neutral `other` vector.
"""

import math
from typing import Dict, Iterable, Sequence, Tuple, Union

from match_kernel.models.item import ItemCategory

AXES = ("tech", "fashion", "media", "sports", "home")

DEFAULT_EMBEDDINGS: Dict[ItemCategory, Tuple[float, ...]] = {
    ItemCategory.ELECTRONICS: (0.9, 0.1, 0.3, 0.2, 0.2),
    ItemCategory.CLOTHES: (0.1, 0.9, 0.2, 0.3, 0.1),
    ItemCategory.BOOKS: (0.2, 0.1, 0.9, 0.1, 0.3),
    ItemCategory.GAMES: (0.7, 0.1, 0.8, 0.4, 0.2),
    ItemCategory.SPORTS: (0.2, 0.3, 0.1, 0.9, 0.2),
    ItemCategory.HOME_GARDEN: (0.2, 0.1, 0.2, 0.1, 0.9),
    ItemCategory.OTHER: (0.3, 0.3, 0.3, 0.3, 0.3),
}


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0 for mismatched, empty or zero-norm vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return 0.0 if norm == 0 else dot / norm


class CategoryEmbeddingTable:
    """Read-only lookup. Safe to share between threads."""

    def __init__(self, embeddings: Dict[ItemCategory, Sequence[float]] = None):
        source = embeddings or DEFAULT_EMBEDDINGS
        dims = {len(v) for v in source.values()}
        if len(dims) != 1:
            raise ValueError("All category embeddings must share one dimension")
        self._vectors = {ItemCategory(k): tuple(v) for k, v in source.items()}
        self.dimension = dims.pop()
        self._fallback = self._vectors.get(
            ItemCategory.OTHER, tuple([1.0 / self.dimension] * self.dimension)
        )

    def vector(self, category: Union[ItemCategory, str]) -> Tuple[float, ...]:
        try:
            return self._vectors.get(ItemCategory(category), self._fallback)
        except ValueError:
            return self._fallback

    def similarity(self, a: Union[ItemCategory, str], b: Union[ItemCategory, str]) -> float:
        return cosine_similarity(self.vector(a), self.vector(b))

    def mean_vector(self, categories: Iterable[Union[ItemCategory, str]]) -> Tuple[float, ...]:
        """Average embedding of a category set; the fallback vector when empty."""
        cats = list(categories)
        if not cats:
            return self._fallback
        total = [0.0] * self.dimension
        for cat in cats:
            for i, v in enumerate(self.vector(cat)):
                total[i] += v / len(cats)
        return tuple(total)
