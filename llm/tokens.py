"""
Recall - Token Estimator
Cheap pre-call token counts for budget reservations.

Uses the ~4 characters per token heuristic, corrected per provider by a
ratio learned from the usage each provider actually reports.
"""

import math
from threading import Lock
from typing import Dict, Optional

CHARS_PER_TOKEN = 4
CALIBRATION_WEIGHT = 0.2       # Weight of each new observation in the running ratio
MIN_RATIO = 0.25
MAX_RATIO = 4.0


class TokenEstimator:
    """Character-count token estimator with per-provider calibration."""

    def __init__(self):
        self._ratios: Dict[str, float] = {}
        self._lock = Lock()

    def estimate(self, text: str, provider: Optional[str] = None) -> int:
        """
        Estimate the token count of `text`.

        Args:
            text: Prompt or completion text
            provider: Provider whose calibration ratio should apply

        Returns:
            Estimated tokens (0 for empty text)
        """
        if not text:
            return 0
        base = len(text) / CHARS_PER_TOKEN
        ratio = self.ratio(provider) if provider else 1.0
        return max(1, math.ceil(base * ratio))

    def ratio(self, provider: str) -> float:
        with self._lock:
            return self._ratios.get(provider, 1.0)

    def calibrate(self, provider: str, text: str, actual_tokens: int) -> None:
        """Fold one observed (text, actual token count) pair into the ratio."""
        if not text or actual_tokens <= 0:
            return
        observed = actual_tokens / (len(text) / CHARS_PER_TOKEN)
        observed = min(MAX_RATIO, max(MIN_RATIO, observed))
        with self._lock:
            current = self._ratios.get(provider)
            if current is None:
                self._ratios[provider] = observed
            else:
                self._ratios[provider] = current + CALIBRATION_WEIGHT * (observed - current)


# Global estimator instance
_estimator: Optional[TokenEstimator] = None


def get_token_estimator() -> TokenEstimator:
    """Get the global token estimator instance."""
    global _estimator
    if _estimator is None:
        _estimator = TokenEstimator()
    return _estimator
