"""
Tests for the Prometheus metrics sink.
"""

import unittest

from core.metrics import MetricsSink


class TestMetricsSink(unittest.TestCase):

    def setUp(self):
        self.sink = MetricsSink()

    def test_sinks_are_isolated(self):
        other = MetricsSink()
        self.sink.record_outcome("alpha", "m", "success")
        self.assertEqual(
            other.value("recall_extraction_requests_total", {"provider": "alpha", "model": "m", "outcome": "success"}),
            0.0,
        )

    def test_usage_and_cost(self):
        self.sink.record_usage("alpha", "m", 100, 40, 0.25)
        self.sink.record_usage("alpha", "m", 10, 0, 0.0)

        labels = {"provider": "alpha", "model": "m"}
        self.assertEqual(self.sink.value("recall_tokens_total", dict(labels, direction="input")), 110.0)
        self.assertEqual(self.sink.value("recall_tokens_total", dict(labels, direction="output")), 40.0)
        self.assertAlmostEqual(self.sink.value("recall_cost_usd_total", labels), 0.25)

    def test_latency_phases(self):
        self.sink.observe_latency("alpha", "m", "provider", 1.5)
        self.sink.observe_latency("alpha", "m", "parsing", 0.01)
        self.assertEqual(
            self.sink.value("recall_latency_seconds_count", {"provider": "alpha", "model": "m", "phase": "provider"}),
            1.0,
        )
        self.assertAlmostEqual(
            self.sink.value("recall_latency_seconds_sum", {"provider": "alpha", "model": "m", "phase": "provider"}),
            1.5,
        )

    def test_gauges(self):
        self.sink.set_circuit_state("alpha", "half_open")
        self.sink.set_budget_utilization(42.0)
        self.assertEqual(self.sink.value("recall_circuit_state", {"provider": "alpha"}), 2.0)
        self.assertEqual(self.sink.value("recall_budget_utilization_percent"), 42.0)

    def test_render(self):
        self.sink.record_fallback("timeout")
        self.sink.record_repair("success")
        self.sink.record_validation("failure")
        text = self.sink.render().decode("utf-8")
        self.assertIn('recall_fallback_invocations_total{reason="timeout"} 1.0', text)
        self.assertIn("recall_repair_attempts_total", text)
        self.assertIn("recall_schema_validations_total", text)


if __name__ == "__main__":
    unittest.main()
