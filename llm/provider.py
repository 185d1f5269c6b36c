"""
Recall - Provider Interface
Common contract for every LLM backend used by the extractor.

Providers never return error objects: every failure is raised as a
ProviderError carrying its ErrorKind.
"""

from abc import ABC, abstractmethod
from typing import Optional, Iterator

from llm.pricing import PricingCatalog, get_pricing_catalog
from llm.settings import ProviderSettings
from llm.tokens import TokenEstimator, get_token_estimator
from llm.types import (
    ErrorKind, ProviderError, ExtractionRequest, ProviderResponse,
    StreamEvent, ProviderCapabilities, CostEstimate, TokenUsage
)


class ProviderClient(ABC):
    """
    One configured LLM backend.

    Subclasses implement send(), capabilities() and validate_config();
    streaming providers also implement stream().
    """

    name = "provider"

    def __init__(
        self,
        settings: ProviderSettings,
        pricing: Optional[PricingCatalog] = None,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.settings = settings
        self.model = settings.model
        self.pricing = pricing or get_pricing_catalog()
        self.estimator = estimator or get_token_estimator()
        # Called with (remaining_requests, reset_seconds) when a response carries limit headers
        self.rate_hint_listener = None

    @abstractmethod
    def send(self, request: ExtractionRequest, timeout: float) -> ProviderResponse:
        """
        Run one non-streaming completion.

        Args:
            request: Extraction request to render and send
            timeout: Per-call deadline in seconds

        Returns:
            ProviderResponse with text and usage

        Raises:
            ProviderError: classified failure
        """

    def stream(self, request: ExtractionRequest, timeout: float) -> Iterator[StreamEvent]:
        """Yield StreamEvents for one completion (streaming providers only)."""
        raise ProviderError(
            ErrorKind.INVALID_REQUEST,
            f"{self.name} does not support streaming",
            provider=self.name,
        )

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Static limits for the configured model."""

    @abstractmethod
    def validate_config(self) -> None:
        """
        Check configuration without touching the network.

        Raises:
            ProviderError(invalid_request): if the provider cannot be used
        """

    def estimate_tokens(self, text: str) -> int:
        return self.estimator.estimate(text, self.name)

    def estimate_cost(self, request: ExtractionRequest) -> CostEstimate:
        """Worst-case cost: estimated prompt tokens plus the full output allowance."""
        input_tokens = self.estimate_tokens(request.prompt_text())
        output_tokens = min(request.max_tokens, self.capabilities().max_output_tokens)
        usd = self.pricing.calculate_cost(self.name, self.model, input_tokens, output_tokens)
        return CostEstimate(input_tokens=input_tokens, output_tokens=output_tokens, usd=usd)

    def actual_cost(self, usage: TokenUsage) -> float:
        return self.pricing.calculate_cost(self.name, self.model, usage.input_tokens, usage.output_tokens)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"
