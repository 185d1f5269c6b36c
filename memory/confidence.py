"""
Recall - Confidence Merger
Combines a freshly extracted confidence with a prior one.

The harmonic mean punishes disagreement: a memory only scores high when
both sides are confident. A missing side counts as 0.5.
"""

from typing import Optional, Callable

from config import CONFIDENCE_DEFAULT
from memory.schema import ExtractionResult, MemoryItem

PriorLookup = Callable[[MemoryItem], Optional[float]]


class ConfidenceMerger:
    """Harmonic-mean merge of two confidence scores."""

    def __init__(self, default: float = CONFIDENCE_DEFAULT):
        self.default = default

    def merge(self, fresh: Optional[float], prior: Optional[float] = None) -> float:
        """
        Merge two scores in [0, 1].

        Returns:
            2ab / (a + b), with None replaced by the default and 0 when both are 0
        """
        a = self.default if fresh is None else fresh
        b = self.default if prior is None else prior
        if a + b == 0:
            return 0.0
        return (2.0 * a * b) / (a + b)

    def merge_item(self, item: MemoryItem, prior: Optional[float]) -> MemoryItem:
        """Copy of `item` with its confidence merged against `prior`."""
        return item.model_copy(update={"confidence": self.merge(item.confidence, prior)})

    def merge_result(self, result: ExtractionResult, lookup: Optional[PriorLookup] = None) -> ExtractionResult:
        """
        Apply prior confidences to every memory in a result.

        Memories with no prior (no lookup, or one that returns None) merge
        against the default.
        """
        merged = [self.merge_item(item, lookup(item) if lookup else None) for item in result.memories]
        return result.model_copy(update={"memories": merged})
