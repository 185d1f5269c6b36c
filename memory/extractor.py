"""
Recall - Memory Extractor
Top-level service: turns an ExtractionRequest into validated memories.

ARCHITECTURE:
    request -> RetryOrchestrator
                 -> BudgetGuard -> CircuitBreaker -> RateLimiter -> provider
                 -> ResponseAssembler (streaming) -> ResponseRepairPipeline
            -> ConfidenceMerger -> ResultSink (optional)

    Budget, circuit and rate-limit state are process-wide and shared by every
    extraction running through the same extractor.
"""

import threading
from typing import Optional, Dict, Tuple, Protocol, List

from core.clock import Clock, JitterSource, get_clock
from core.logger import log_info, log_warning
from core.metrics import MetricsSink, get_metrics_sink
from concurrency.cancellation import CancellationToken
from concurrency.circuit_breaker import CircuitBreakerRegistry, CircuitState
from concurrency.rate_limiter import RateLimiterRegistry
from llm.budget import BudgetGuard
from llm.factory import ProviderFactory
from llm.retry_manager import RetryOrchestrator, ExtractionOutcome
from llm.settings import ExtractionSettings, LLMConfigError, load_settings, require_valid_settings
from llm.types import ExtractionRequest, ProviderError, AttemptRecord, UnknownProviderError
from memory.confidence import ConfidenceMerger, PriorLookup
from memory.repair import ResponseRepairPipeline
from memory.schema import ExtractionResult
import config


class ResultSink(Protocol):
    """Persistence collaborator; only ever receives validated results."""

    def store(self, result: ExtractionResult, attempts: List[AttemptRecord]) -> None:
        ...


class MemoryExtractor:
    """
    Resilient memory extraction.

    Thread-safe: extract() may be called from several threads at once.
    """

    def __init__(
        self,
        settings: Optional[ExtractionSettings] = None,
        factory: Optional[ProviderFactory] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Optional[Clock] = None,
        jitter: Optional[JitterSource] = None,
        sink: Optional[ResultSink] = None,
    ):
        """
        Initialize the extractor and every shared component.

        Args:
            settings: Extraction settings (loaded from the environment if None)
            factory: Provider factory (built from settings if None)
            metrics: Metrics sink (global sink if None)
            clock: Time source
            jitter: Backoff jitter source
            sink: Optional persistence collaborator
        """
        self.settings = require_valid_settings(settings or load_settings())
        self.metrics = metrics or get_metrics_sink()
        self.clock = clock or get_clock()
        self.factory = factory or ProviderFactory(self.settings)
        unknown = [
            name for name in (self.settings.primary, self.settings.fallback)
            if name and not self.factory.has(name)
        ]
        if unknown:
            raise LLMConfigError([f'Provider "{name}" is not supported' for name in unknown])
        self.sink = sink
        self.merger = ConfidenceMerger()

        self.budget = BudgetGuard(
            daily_limit_usd=self.settings.daily_budget_usd,
            clock=self.clock,
            warning_thresholds=config.BUDGET_WARNING_THRESHOLDS,
            on_utilization=self.metrics.set_budget_utilization,
        )
        self.circuits = CircuitBreakerRegistry(
            threshold=self.settings.circuit_threshold,
            cooldown_seconds=self.settings.circuit_cooldown,
            window_size=config.CIRCUIT_WINDOW_SIZE,
            minimum_calls=self.settings.circuit_min_calls,
            clock=self.clock,
            listener=self._on_circuit_transition,
        )
        self.limiters = RateLimiterRegistry(self.settings.rate_limits, clock=self.clock)
        self.pipeline = ResponseRepairPipeline(metrics=self.metrics)

        self.orchestrator = RetryOrchestrator(
            factory=self.factory,
            primary=self.settings.primary,
            fallback=self.settings.fallback,
            budget=self.budget,
            circuits=self.circuits,
            limiters=self.limiters,
            pipeline=self.pipeline,
            metrics=self.metrics,
            clock=self.clock,
            jitter=jitter,
            max_attempts=self.settings.max_retries,
            call_timeout=self.settings.call_timeout,
            acquire_timeout=config.RATE_LIMIT_ACQUIRE_TIMEOUT,
            streaming=self.settings.streaming,
            fallback_on_invalid_request=self.settings.fallback_on_invalid_request,
        )

        self._lock = threading.Lock()
        self._extraction_count = 0
        self._failure_count = 0

    def _on_circuit_transition(self, provider: str, old: CircuitState, new: CircuitState) -> None:
        self.metrics.set_circuit_state(provider, new.value)

    def extract(
        self,
        request: ExtractionRequest,
        cancel: Optional[CancellationToken] = None,
        prior_lookup: Optional[PriorLookup] = None,
    ) -> ExtractionOutcome:
        """
        Extract memories from one request.

        Args:
            request: Conversation excerpt plus mood context
            cancel: Cancellation token / overall deadline
            prior_lookup: Returns the prior confidence for a memory being
                re-extracted (None for memories seen for the first time)

        Returns:
            ExtractionOutcome with a validated result or a classified failure
        """
        outcome = self.orchestrator.run(request, cancel=cancel)

        if outcome.ok:
            outcome.result = self.merger.merge_result(outcome.result, prior_lookup)
            if self.sink is not None:
                self.sink.store(outcome.result, list(outcome.attempts))

        with self._lock:
            self._extraction_count += 1
            if not outcome.ok:
                self._failure_count += 1
        return outcome

    def check_providers(self) -> Dict[str, Tuple[bool, str]]:
        """
        Validate the configured providers without calling them.

        Returns:
            Map of provider name to (ok, message)
        """
        results = {}
        for name in filter(None, (self.settings.primary, self.settings.fallback)):
            try:
                provider = self.factory.resolve(name)
                provider.validate_config()
            except (ProviderError, UnknownProviderError) as e:
                log_warning(f"Provider {name} unusable: {e}")
                results[name] = (False, str(e))
                continue
            results[name] = (True, f"{provider.model}")
        return results

    def get_stats(self) -> Dict[str, object]:
        """Diagnostics for the operator console."""
        budget = self.budget.snapshot()
        with self._lock:
            extractions = self._extraction_count
            failures = self._failure_count
        return {
            "total_extractions": extractions,
            "failed_extractions": failures,
            "budget_spent_usd": budget.spent_usd,
            "budget_limit_usd": budget.daily_limit_usd,
            "budget_utilization_percent": budget.utilization_percent,
            "circuits": {name: state.value for name, state in self.circuits.states().items()},
        }


# =============================================================================
# GLOBAL INSTANCE MANAGEMENT
# =============================================================================

_extractor: Optional[MemoryExtractor] = None


def get_memory_extractor() -> MemoryExtractor:
    """Get the global memory extractor instance (lazy initialization)."""
    global _extractor
    if _extractor is None:
        _extractor = MemoryExtractor()
        log_info(f"Memory extractor ready (primary={_extractor.settings.primary})")
    return _extractor


def init_memory_extractor(settings: Optional[ExtractionSettings] = None, **kwargs) -> MemoryExtractor:
    """Initialize the global memory extractor (explicit initialization)."""
    global _extractor
    _extractor = MemoryExtractor(settings=settings, **kwargs)
    return _extractor
