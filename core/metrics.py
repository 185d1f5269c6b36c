"""
Recall - Metrics Sink
Prometheus counters, histograms and gauges for the extraction pipeline.

Each sink owns its CollectorRegistry so independent sinks (and tests) never
collide on metric names.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

CIRCUIT_STATE_VALUES = {"closed": 0, "open": 1, "half_open": 2}


class MetricsSink:
    """Observer for every stage of an extraction."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "recall_extraction_requests_total",
            "Extractions by terminal outcome",
            ["provider", "model", "outcome"],
            registry=self.registry,
        )
        self.tokens = Counter(
            "recall_tokens_total",
            "Tokens consumed",
            ["provider", "model", "direction"],
            registry=self.registry,
        )
        self.cost = Counter(
            "recall_cost_usd_total",
            "Spend in USD",
            ["provider", "model"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "recall_latency_seconds",
            "Latency by phase",
            ["provider", "model", "phase"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "recall_circuit_state",
            "Circuit state (0 closed, 1 open, 2 half open)",
            ["provider"],
            registry=self.registry,
        )
        self.budget_utilization = Gauge(
            "recall_budget_utilization_percent",
            "Daily budget utilization",
            registry=self.registry,
        )
        self.repair_attempts = Counter(
            "recall_repair_attempts_total",
            "Response repair passes by result",
            ["result"],
            registry=self.registry,
        )
        self.fallbacks = Counter(
            "recall_fallback_invocations_total",
            "Fallback provider invocations by triggering error",
            ["reason"],
            registry=self.registry,
        )
        self.schema_validations = Counter(
            "recall_schema_validations_total",
            "Schema validations by result",
            ["result"],
            registry=self.registry,
        )

    def record_outcome(self, provider: str, model: str, outcome: str) -> None:
        self.requests.labels(provider=provider, model=model, outcome=outcome).inc()

    def record_usage(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float
    ) -> None:
        if input_tokens:
            self.tokens.labels(provider=provider, model=model, direction="input").inc(input_tokens)
        if output_tokens:
            self.tokens.labels(provider=provider, model=model, direction="output").inc(output_tokens)
        if cost_usd > 0:
            self.cost.labels(provider=provider, model=model).inc(cost_usd)

    def observe_latency(self, provider: str, model: str, phase: str, seconds: float) -> None:
        self.latency.labels(provider=provider, model=model, phase=phase).observe(max(0.0, seconds))

    def set_circuit_state(self, provider: str, state: str) -> None:
        self.circuit_state.labels(provider=provider).set(CIRCUIT_STATE_VALUES.get(state, 0))

    def set_budget_utilization(self, percent: float) -> None:
        self.budget_utilization.set(percent)

    def record_repair(self, result: str) -> None:
        self.repair_attempts.labels(result=result).inc()

    def record_fallback(self, reason: str) -> None:
        self.fallbacks.labels(reason=reason).inc()

    def record_validation(self, result: str) -> None:
        self.schema_validations.labels(result=result).inc()

    def value(self, name: str, labels: Optional[dict] = None) -> float:
        """Current value of a sample (0.0 when absent)."""
        sample = self.registry.get_sample_value(name, labels or {})
        return sample if sample is not None else 0.0

    def render(self) -> bytes:
        """Text exposition of every metric in this sink."""
        return generate_latest(self.registry)


# Global metrics sink instance
_metrics_sink: Optional[MetricsSink] = None


def get_metrics_sink() -> MetricsSink:
    """Get the global metrics sink instance."""
    global _metrics_sink
    if _metrics_sink is None:
        _metrics_sink = MetricsSink()
    return _metrics_sink
