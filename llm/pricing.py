"""
Recall - Pricing Catalog
Per-model token prices and cost estimation.

Prices are USD per 1,000 tokens. Model lookup falls back to the longest
registered prefix, so dated model ids ("claude-3-haiku-20240307") resolve
to their family entry ("claude-3-haiku").
"""

from dataclasses import dataclass, field
from threading import Lock
from typing import Optional, List, Dict, Tuple

from core.logger import log_warning


@dataclass(frozen=True)
class ModelPricing:
    """Price sheet for one model."""
    input_per_thousand: float
    output_per_thousand: float
    flat_rate_per_request: float = 0.0
    notes: str = ""


@dataclass
class ProviderPricing:
    """All priced models offered by one provider."""
    provider: str
    models: Dict[str, ModelPricing] = field(default_factory=dict)
    default_model: Optional[str] = None
    currency: str = "USD"


INITIAL_PRICING: List[ProviderPricing] = [
    ProviderPricing(
        provider="anthropic",
        default_model="claude-3-haiku",
        models={
            "claude-3-opus": ModelPricing(0.015, 0.075, notes="Most capable, complex tasks"),
            "claude-3-sonnet": ModelPricing(0.003, 0.015, notes="Balanced"),
            "claude-3-haiku": ModelPricing(0.00025, 0.00125, notes="Fast and cheap"),
        },
    ),
    ProviderPricing(
        provider="openai",
        default_model="gpt-3.5-turbo",
        models={
            "gpt-4-turbo": ModelPricing(0.01, 0.03),
            "gpt-4": ModelPricing(0.03, 0.06),
            "gpt-3.5-turbo": ModelPricing(0.0005, 0.0015),
        },
    ),
    ProviderPricing(
        provider="kobold",
        default_model="koboldcpp",
        models={
            "koboldcpp": ModelPricing(0.0, 0.0, notes="Local inference"),
        },
    ),
]


class PricingCatalog:
    """
    Registry of provider pricing.

    Thread-safe; one instance is normally shared through get_pricing_catalog().
    """

    def __init__(self, pricing: Optional[List[ProviderPricing]] = None):
        self._pricing: Dict[str, ProviderPricing] = {}
        self._lock = Lock()
        self._warned: set = set()
        for entry in pricing if pricing is not None else INITIAL_PRICING:
            self.register(entry)

    def register(self, pricing: ProviderPricing) -> None:
        """Register (or replace) the price sheet for a provider."""
        with self._lock:
            self._pricing[pricing.provider] = pricing

    def providers(self) -> List[str]:
        with self._lock:
            return list(self._pricing.keys())

    def get_provider_pricing(self, provider: str) -> Optional[ProviderPricing]:
        with self._lock:
            return self._pricing.get(provider)

    def get_model_pricing(self, provider: str, model: str) -> Optional[ModelPricing]:
        """
        Look up pricing for a model.

        Args:
            provider: Provider name
            model: Exact model id or a dated/suffixed variant of a priced model

        Returns:
            ModelPricing, or None if neither the model nor a prefix is priced
        """
        with self._lock:
            sheet = self._pricing.get(provider)
        if sheet is None:
            return None
        if model in sheet.models:
            return sheet.models[model]

        best: Optional[Tuple[str, ModelPricing]] = None
        for name, pricing in sheet.models.items():
            if model.startswith(name) and (best is None or len(name) > len(best[0])):
                best = (name, pricing)
        return best[1] if best else None

    def calculate_cost(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int
    ) -> float:
        """
        Cost in USD for a token count.

        Unpriced models cost 0; a warning is logged once per model.
        """
        pricing = self.get_model_pricing(provider, model)
        if pricing is None:
            key = f"{provider}:{model}"
            if key not in self._warned:
                self._warned.add(key)
                log_warning(f"No pricing for {key}; cost treated as $0")
            return 0.0

        input_cost = (input_tokens / 1000.0) * pricing.input_per_thousand
        output_cost = (output_tokens / 1000.0) * pricing.output_per_thousand
        return input_cost + output_cost + pricing.flat_rate_per_request

    def find_cheapest_option(
        self,
        input_tokens: int,
        output_tokens: int
    ) -> Optional[Tuple[str, str, float]]:
        """
        Find the cheapest priced model for a workload.

        Returns:
            Tuple of (provider, model, cost), or None if nothing is registered
        """
        cheapest: Optional[Tuple[str, str, float]] = None
        with self._lock:
            sheets = list(self._pricing.values())
        for sheet in sheets:
            for model_name in sheet.models:
                cost = self.calculate_cost(sheet.provider, model_name, input_tokens, output_tokens)
                if cheapest is None or cost < cheapest[2]:
                    cheapest = (sheet.provider, model_name, cost)
        return cheapest


# Global catalog instance
_catalog: Optional[PricingCatalog] = None


def get_pricing_catalog() -> PricingCatalog:
    """Get the global pricing catalog instance."""
    global _catalog
    if _catalog is None:
        _catalog = PricingCatalog()
    return _catalog
