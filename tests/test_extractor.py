"""
Tests for the top-level memory extractor.
"""

import unittest

from core.clock import ManualClock, ZeroJitter
from core.metrics import MetricsSink
from llm.factory import ProviderFactory
from llm.settings import ExtractionSettings, LLMConfigError, ProviderSettings
from llm.types import ErrorKind, Outcome
from memory.extractor import MemoryExtractor

from fakes import GENEROUS_LIMITS, ScriptedProvider, error, sample_request, valid_json


class RecordingSink:
    def __init__(self):
        self.stored = []

    def store(self, result, attempts):
        self.stored.append((result, attempts))


class BrokenProvider(ScriptedProvider):
    def validate_config(self):
        raise error(ErrorKind.INVALID_REQUEST, "no model configured")


def build_extractor(primary, fallback=None, sink=None):
    providers = {primary.name: ProviderSettings(primary.name, api_key="k")}
    if fallback is not None:
        providers[fallback.name] = ProviderSettings(fallback.name, api_key="k")
    settings = ExtractionSettings(
        primary=primary.name,
        fallback=fallback.name if fallback is not None else None,
        rate_limits=GENEROUS_LIMITS,
        providers=providers,
    )

    factory = ProviderFactory(settings, builders={})
    factory.register_instance(primary.name, primary)
    if fallback is not None:
        factory.register_instance(fallback.name, fallback)

    return MemoryExtractor(
        settings=settings,
        factory=factory,
        metrics=MetricsSink(),
        clock=ManualClock(),
        jitter=ZeroJitter(),
        sink=sink,
    )


class TestMemoryExtractor(unittest.TestCase):

    def test_success_reaches_sink(self):
        sink = RecordingSink()
        extractor = build_extractor(ScriptedProvider("alpha", [valid_json(2)]), sink=sink)

        outcome = extractor.extract(sample_request())

        self.assertEqual(outcome.outcome, Outcome.SUCCESS)
        self.assertEqual(len(sink.stored), 1)
        result, attempts = sink.stored[0]
        self.assertEqual(len(result.memories), 2)
        self.assertEqual(len(attempts), 1)

    def test_failure_never_reaches_sink(self):
        sink = RecordingSink()
        extractor = build_extractor(
            ScriptedProvider("alpha", [error(ErrorKind.AUTHENTICATION, "bad key")]),
            sink=sink,
        )

        outcome = extractor.extract(sample_request())

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.outcome, Outcome.ERROR)
        self.assertEqual(outcome.error_kind, ErrorKind.AUTHENTICATION)
        self.assertEqual(sink.stored, [])

    def test_prior_confidence_is_merged(self):
        extractor = build_extractor(ScriptedProvider("alpha", [valid_json(1)]))

        outcome = extractor.extract(sample_request(), prior_lookup=lambda item: 0.4)

        self.assertAlmostEqual(outcome.result.memories[0].confidence, 0.5333, places=4)

    def test_fresh_memory_merges_against_default_prior(self):
        extractor = build_extractor(ScriptedProvider("alpha", [valid_json(1, confidence=0.9)]))

        outcome = extractor.extract(sample_request())

        self.assertAlmostEqual(outcome.result.memories[0].confidence, 0.6429, places=4)

    def test_stats(self):
        extractor = build_extractor(
            ScriptedProvider("alpha", [valid_json(1), error(ErrorKind.POLICY, "refused")])
        )
        extractor.extract(sample_request())
        extractor.extract(sample_request())

        stats = extractor.get_stats()
        self.assertEqual(stats["total_extractions"], 2)
        self.assertEqual(stats["failed_extractions"], 1)
        self.assertEqual(stats["budget_limit_usd"], 0.0)
        self.assertEqual(stats["circuits"], {"alpha": "closed"})

    def test_check_providers(self):
        extractor = build_extractor(
            ScriptedProvider("alpha", []),
            fallback=BrokenProvider("beta", []),
        )

        results = extractor.check_providers()

        self.assertEqual(results["alpha"], (True, "alpha-model"))
        self.assertFalse(results["beta"][0])
        self.assertIn("no model configured", results["beta"][1])

    def test_invalid_settings_rejected(self):
        settings = ExtractionSettings(primary="alpha", providers={"alpha": ProviderSettings("alpha")})
        with self.assertRaises(LLMConfigError):
            MemoryExtractor(settings=settings, metrics=MetricsSink())

    def test_unsupported_provider_rejected(self):
        settings = ExtractionSettings(
            primary="mistral",
            fallback="ghost",
            providers={
                "mistral": ProviderSettings("mistral", api_key="k"),
                "ghost": ProviderSettings("ghost", api_key="k"),
            },
        )
        with self.assertRaises(LLMConfigError) as ctx:
            MemoryExtractor(settings=settings, metrics=MetricsSink())
        self.assertEqual(len(ctx.exception.errors), 2)
        self.assertIn("mistral", ctx.exception.errors[0])


if __name__ == "__main__":
    unittest.main()
