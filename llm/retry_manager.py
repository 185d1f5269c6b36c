"""
Recall - Retry Orchestrator
Drives one extraction through budget, circuit and rate-limit gates,
retries, the one-shot corrective retry and the one-hop fallback.

Usage:
    from llm.retry_manager import RetryOrchestrator

    orchestrator = RetryOrchestrator(factory, primary="anthropic", fallback="openai", ...)
    outcome = orchestrator.run(request, cancel=CancellationToken.with_timeout(120))
    if outcome.ok:
        store(outcome.result)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Tuple

from config import RETRY_INITIAL_DELAY, RETRY_BACKOFF_MULTIPLIER, RETRY_MAX_DELAY, RETRY_JITTER
from core.clock import Clock, JitterSource, get_clock
from core.logger import log_info, log_warning, log_error, log_success
from core.metrics import MetricsSink
from concurrency.cancellation import CancellationToken
from concurrency.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from concurrency.rate_limiter import RateLimiterRegistry
from llm.budget import BudgetGuard, BudgetBlockedError
from llm.factory import ProviderFactory
from llm.provider import ProviderClient
from llm.types import (
    ErrorKind, Outcome, ProviderError, ExtractionRequest, AttemptRecord, TokenUsage, UnknownProviderError
)
from memory.assembler import ResponseAssembler
from memory.repair import ResponseRepairPipeline, RepairOutcome
from memory.schema import ExtractionResult

RETRYABLE_KINDS = (ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.TRANSIENT)
FALLBACK_KINDS = (ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.TRANSIENT, ErrorKind.PARSING)
# Errors that say something about the provider's health
CIRCUIT_FAILURE_KINDS = (
    ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.TRANSIENT,
    ErrorKind.AUTHENTICATION, ErrorKind.UNKNOWN,
)


class Decision(Enum):
    RETRY = "retry"
    CORRECTIVE_RETRY = "corrective_retry"
    FALLBACK = "fallback"
    FAIL = "fail"


def decide(
    kind: ErrorKind,
    attempt_number: int,
    fallback_available: bool,
    *,
    max_attempts: int = 3,
    corrective_used: bool = False,
    on_fallback: bool = False,
    fallback_on_invalid_request: bool = False,
) -> Decision:
    """
    What to do after a failed attempt.

    Args:
        kind: Error kind of the failed attempt
        attempt_number: Ordinary (non-corrective) attempts made on the current provider
        fallback_available: A fallback provider is configured and not yet used
        max_attempts: Attempt cap for rate_limit, timeout and transient
        corrective_used: The one corrective retry has already been spent
        on_fallback: The failed attempt was the fallback attempt
        fallback_on_invalid_request: invalid_request may fall back

    Returns:
        Decision
    """
    if on_fallback:
        return Decision.FAIL

    if kind == ErrorKind.PARSING:
        if not corrective_used:
            return Decision.CORRECTIVE_RETRY
        return Decision.FALLBACK if fallback_available else Decision.FAIL

    if kind in RETRYABLE_KINDS:
        if attempt_number < max_attempts:
            return Decision.RETRY
        return Decision.FALLBACK if fallback_available else Decision.FAIL

    if kind == ErrorKind.INVALID_REQUEST and fallback_on_invalid_request and fallback_available:
        return Decision.FALLBACK

    return Decision.FAIL


def backoff_delay(attempt_number: int, jitter: JitterSource) -> float:
    """
    Seconds to wait after the given failed attempt.

    min(initial * multiplier^(n-1), max) plus uniform jitter, never negative
    (0.5s doubling to 8s, +/-0.2s with the defaults in config.py).
    """
    base = min(RETRY_INITIAL_DELAY * (RETRY_BACKOFF_MULTIPLIER ** (attempt_number - 1)), RETRY_MAX_DELAY)
    return max(0.0, base + jitter.uniform(-RETRY_JITTER, RETRY_JITTER))


@dataclass
class ExtractionOutcome:
    """
    Terminal result of one extraction.

    Either `result` is set (success / fallback_success) or `outcome` names a
    single classified failure.
    """
    outcome: Outcome
    result: Optional[ExtractionResult] = None
    error_kind: Optional[ErrorKind] = None
    attempts: List[AttemptRecord] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    message: str = ""
    repair: Optional[RepairOutcome] = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def label(self) -> str:
        """Metric-friendly outcome, e.g. 'success' or 'error_timeout'."""
        if self.outcome == Outcome.ERROR and self.error_kind is not None:
            return f"error_{self.error_kind.value}"
        return self.outcome.value

    @property
    def total_cost_usd(self) -> float:
        return sum(a.cost_usd for a in self.attempts)


class RetryOrchestrator:
    """
    Runs extractions with retry, corrective retry and fallback.

    Holds no per-extraction state, so one instance serves concurrent callers;
    the budget, circuit and limiter registries it shares are internally
    synchronized.
    """

    def __init__(
        self,
        factory: ProviderFactory,
        primary: str,
        budget: BudgetGuard,
        circuits: CircuitBreakerRegistry,
        limiters: RateLimiterRegistry,
        pipeline: ResponseRepairPipeline,
        metrics: MetricsSink,
        fallback: Optional[str] = None,
        clock: Optional[Clock] = None,
        jitter: Optional[JitterSource] = None,
        max_attempts: int = 3,
        call_timeout: float = 60.0,
        acquire_timeout: float = 30.0,
        streaming: bool = True,
        fallback_on_invalid_request: bool = False,
    ):
        self.factory = factory
        self.primary = primary
        self.fallback = fallback
        self.budget = budget
        self.circuits = circuits
        self.limiters = limiters
        self.pipeline = pipeline
        self.metrics = metrics
        self.clock = clock or get_clock()
        self.jitter = jitter or JitterSource()
        self.max_attempts = max_attempts
        self.call_timeout = call_timeout
        self.acquire_timeout = acquire_timeout
        self.streaming = streaming
        self.fallback_on_invalid_request = fallback_on_invalid_request

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self, request: ExtractionRequest, cancel: Optional[CancellationToken] = None) -> ExtractionOutcome:
        """
        Extract memories for `request`.

        Args:
            request: Immutable extraction request
            cancel: Cancellation / overall deadline (none by default)

        Returns:
            ExtractionOutcome; never raises for provider or gate failures
        """
        cancel = cancel or CancellationToken(clock=self.clock)
        attempts: List[AttemptRecord] = []

        provider_name = self.primary
        current = request
        on_fallback = False
        attempt_number = 0
        corrective_used = False
        corrective_next = False

        while True:
            if cancel.is_cancelled():
                return self._interrupted(cancel, attempts, provider_name)

            corrective = corrective_next
            corrective_next = False
            if not corrective:
                attempt_number += 1

            try:
                provider, record, repair, error = self._attempt(
                    provider_name, current, cancel, corrective=corrective, fallback=on_fallback
                )
            except BudgetBlockedError as e:
                log_warning(f"Extraction blocked by budget: {e}")
                return self._finish(
                    ExtractionOutcome(Outcome.BUDGET_BLOCKED, attempts=attempts, message=str(e)),
                    provider_name,
                )
            except CircuitOpenError as e:
                if not on_fallback and self._fallback_available():
                    log_warning(f"{e}; switching to fallback {self.fallback}")
                    self.metrics.record_fallback("circuit_open")
                    provider_name, current, on_fallback = self.fallback, request, True
                    attempt_number = 0
                    continue
                return self._finish(
                    ExtractionOutcome(Outcome.CIRCUIT_OPEN, attempts=attempts, message=str(e)),
                    provider_name,
                )
            except UnknownProviderError as e:
                log_error(f"Extraction failed: {e}")
                return self._finish(
                    ExtractionOutcome(
                        Outcome.ERROR,
                        error_kind=ErrorKind.INVALID_REQUEST,
                        attempts=attempts,
                        message=str(e),
                    ),
                    provider_name,
                )

            attempts.append(record)

            if error is None:
                outcome = Outcome.FALLBACK_SUCCESS if on_fallback else Outcome.SUCCESS
                log_success(
                    f"Extracted {len(repair.result.memories)} memories via {provider.name} "
                    f"(pass={repair.pass_name}, attempts={len(attempts)})"
                )
                return self._finish(
                    ExtractionOutcome(
                        outcome,
                        result=repair.result,
                        attempts=attempts,
                        provider=provider.name,
                        model=provider.model,
                        repair=repair,
                    ),
                    provider.name,
                )

            if cancel.is_cancelled():
                return self._interrupted(cancel, attempts, provider.name)

            decision = decide(
                error.kind,
                attempt_number,
                self._fallback_available() and not on_fallback,
                max_attempts=self.max_attempts,
                corrective_used=corrective_used,
                on_fallback=on_fallback,
                fallback_on_invalid_request=self.fallback_on_invalid_request,
            )

            if decision == Decision.RETRY:
                delay = backoff_delay(attempt_number, self.jitter)
                if error.kind == ErrorKind.RATE_LIMIT and error.retry_after:
                    delay = max(delay, error.retry_after)
                log_warning(
                    f"{provider.name} {error.kind.value} (attempt {attempt_number}/{self.max_attempts}): "
                    f"{error.message}. Retrying in {delay:.2f}s..."
                )
                if not self.clock.sleep(delay, cancel):
                    return self._interrupted(cancel, attempts, provider.name)
                continue

            if decision == Decision.CORRECTIVE_RETRY:
                log_info(f"Unparseable response from {provider.name}; sending corrective retry")
                corrective_used = True
                corrective_next = True
                current = request.with_corrective_instruction()
                continue

            if decision == Decision.FALLBACK:
                log_warning(f"{provider.name} exhausted on {error.kind.value}; trying fallback {self.fallback}")
                self.metrics.record_fallback(error.kind.value)
                provider_name, current, on_fallback = self.fallback, request, True
                attempt_number = 0
                continue

            log_error(f"Extraction failed ({error.kind.value}) on {provider.name}: {error.message}")
            return self._finish(
                ExtractionOutcome(
                    Outcome.ERROR,
                    error_kind=error.kind,
                    attempts=attempts,
                    provider=provider.name,
                    model=provider.model,
                    message=error.message,
                ),
                provider.name,
            )

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _fallback_available(self) -> bool:
        return bool(self.fallback) and self.fallback != self.primary

    def _resolve(self, name: str) -> ProviderClient:
        provider = self.factory.resolve(name)
        if provider.rate_hint_listener is None:
            provider.rate_hint_listener = self.limiters.get(provider.name).update_from_headers
        return provider

    def _bounded(self, limit: float, cancel: CancellationToken) -> float:
        remaining = cancel.remaining()
        return limit if remaining is None else min(limit, remaining)

    def _attempt(
        self,
        provider_name: str,
        request: ExtractionRequest,
        cancel: CancellationToken,
        corrective: bool,
        fallback: bool,
    ) -> Tuple[ProviderClient, AttemptRecord, Optional[RepairOutcome], Optional[ProviderError]]:
        """
        Run a single provider attempt through every gate.

        Raises:
            BudgetBlockedError, CircuitOpenError: gate refusals (never retried)
        """
        provider = self._resolve(provider_name)
        estimate = provider.estimate_cost(request)
        reservation = self.budget.check_and_reserve(estimate.usd)

        try:
            permit = self.circuits.get(provider.name).try_acquire()
        except CircuitOpenError:
            self.budget.release(reservation)
            raise

        started_at = self.clock.now_utc()
        started = self.clock.monotonic()
        text = ""
        usage = TokenUsage()
        error: Optional[ProviderError] = None

        try:
            limiter = self.limiters.get(provider.name)
            limiter.acquire(timeout=self._bounded(self.acquire_timeout, cancel), cancel=cancel)
            text, usage = self._call(provider, request, cancel)
        except ProviderError as e:
            error = e
            if error.provider is None:
                error.provider = provider.name
        except BaseException:
            permit.release()
            self.budget.release(reservation)
            raise
        provider_seconds = self.clock.monotonic() - started

        if error is None:
            permit.record_success()
        elif error.local or cancel.is_cancelled() or error.kind not in CIRCUIT_FAILURE_KINDS:
            permit.release()
        else:
            permit.record_failure()

        if error is not None and error.kind == ErrorKind.RATE_LIMIT and error.retry_after:
            self.limiters.get(provider.name).pause(error.retry_after)

        cost = 0.0
        if error is None:
            if usage.total == 0:
                usage = TokenUsage(
                    input_tokens=estimate.input_tokens,
                    output_tokens=provider.estimate_tokens(text),
                )
            elif usage.input_tokens:
                provider.estimator.calibrate(provider.name, request.prompt_text(), usage.input_tokens)
            cost = provider.actual_cost(usage)
            self.budget.settle(reservation, cost)
            self.metrics.record_usage(provider.name, provider.model, usage.input_tokens, usage.output_tokens, cost)
        else:
            self.budget.release(reservation)
        self.metrics.observe_latency(provider.name, provider.model, "provider", provider_seconds)

        repair = None
        if error is None:
            parse_started = self.clock.monotonic()
            try:
                repair = self.pipeline.repair(text, schema_version=request.schema_version)
            except ProviderError as e:
                error = e
                error.provider = provider.name
            self.metrics.observe_latency(
                provider.name, provider.model, "parsing", self.clock.monotonic() - parse_started
            )

        record = AttemptRecord(
            provider=provider.name,
            model=provider.model,
            timestamp=started_at,
            latency_ms=provider_seconds * 1000.0,
            outcome="success" if error is None else "error",
            error_kind=error.kind if error is not None else None,
            tokens_in=usage.input_tokens,
            tokens_out=usage.output_tokens,
            cost_usd=cost,
            corrective=corrective,
            fallback=fallback,
        )
        return provider, record, repair, error

    def _call(
        self,
        provider: ProviderClient,
        request: ExtractionRequest,
        cancel: CancellationToken,
    ) -> Tuple[str, TokenUsage]:
        timeout = self._bounded(self.call_timeout, cancel)
        if timeout <= 0:
            raise ProviderError(ErrorKind.TIMEOUT, "Deadline reached before the call", provider=provider.name)

        if self.streaming and provider.capabilities().supports_streaming:
            assembler = ResponseAssembler(clock=self.clock)
            assembled = assembler.consume(
                provider.stream(request, timeout),
                deadline=self.clock.monotonic() + timeout,
                cancel=cancel,
            )
            return assembled.text, assembled.usage

        response = provider.send(request, timeout)
        return response.text, response.usage

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    def _interrupted(
        self,
        cancel: CancellationToken,
        attempts: List[AttemptRecord],
        provider_name: str,
    ) -> ExtractionOutcome:
        if cancel.explicitly_cancelled:
            log_warning("Extraction cancelled")
            outcome = ExtractionOutcome(Outcome.CANCELLED, attempts=attempts, message="cancelled")
        else:
            log_warning("Extraction deadline exceeded")
            outcome = ExtractionOutcome(
                Outcome.ERROR,
                error_kind=ErrorKind.TIMEOUT,
                attempts=attempts,
                message="deadline exceeded",
            )
        return self._finish(outcome, provider_name)

    def _finish(self, outcome: ExtractionOutcome, provider_name: str) -> ExtractionOutcome:
        if not outcome.provider:
            outcome.provider = provider_name
        if not outcome.model and outcome.attempts:
            outcome.model = outcome.attempts[-1].model
        self.metrics.record_outcome(outcome.provider, outcome.model or "unknown", outcome.label)
        return outcome
