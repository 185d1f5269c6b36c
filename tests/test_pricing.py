"""
Tests for the pricing catalog and token estimator.
"""

import unittest

from llm.pricing import ModelPricing, PricingCatalog, ProviderPricing
from llm.tokens import TokenEstimator


class TestPricingCatalog(unittest.TestCase):

    def setUp(self):
        self.catalog = PricingCatalog()

    def test_exact_model_cost(self):
        cost = self.catalog.calculate_cost("anthropic", "claude-3-haiku", 1000, 1000)
        self.assertAlmostEqual(cost, 0.0015)

    def test_dated_model_uses_longest_prefix(self):
        self.catalog.register(ProviderPricing(
            provider="openai",
            models={
                "gpt-4": ModelPricing(0.03, 0.06),
                "gpt-4-turbo": ModelPricing(0.01, 0.03),
            },
        ))
        pricing = self.catalog.get_model_pricing("openai", "gpt-4-turbo-2024-04-09")
        self.assertEqual(pricing.input_per_thousand, 0.01)

    def test_unpriced_model_is_free(self):
        self.assertIsNone(self.catalog.get_model_pricing("anthropic", "unknown-model"))
        self.assertEqual(self.catalog.calculate_cost("anthropic", "unknown-model", 500, 500), 0.0)
        self.assertEqual(self.catalog.calculate_cost("nobody", "x", 500, 500), 0.0)

    def test_flat_rate_per_request(self):
        catalog = PricingCatalog(pricing=[
            ProviderPricing("hosted", models={"m": ModelPricing(0.0, 0.0, flat_rate_per_request=0.002)})
        ])
        self.assertAlmostEqual(catalog.calculate_cost("hosted", "m", 0, 0), 0.002)

    def test_find_cheapest_option(self):
        provider, model, cost = self.catalog.find_cheapest_option(1000, 500)
        self.assertEqual((provider, model, cost), ("kobold", "koboldcpp", 0.0))

        paid = PricingCatalog(pricing=[
            self.catalog.get_provider_pricing("anthropic"),
            self.catalog.get_provider_pricing("openai"),
        ])
        provider, model, _ = paid.find_cheapest_option(1000, 500)
        self.assertEqual((provider, model), ("anthropic", "claude-3-haiku"))

    def test_empty_catalog(self):
        self.assertIsNone(PricingCatalog(pricing=[]).find_cheapest_option(10, 10))


class TestTokenEstimator(unittest.TestCase):

    def test_four_characters_per_token(self):
        estimator = TokenEstimator()
        self.assertEqual(estimator.estimate(""), 0)
        self.assertEqual(estimator.estimate("abc"), 1)
        self.assertEqual(estimator.estimate("a" * 400), 100)
        self.assertEqual(estimator.estimate("a" * 401), 101)

    def test_calibration_moves_towards_observed_ratio(self):
        estimator = TokenEstimator()
        text = "a" * 400
        estimator.calibrate("alpha", text, 200)
        self.assertAlmostEqual(estimator.ratio("alpha"), 2.0)
        self.assertEqual(estimator.estimate(text, "alpha"), 200)

        estimator.calibrate("alpha", text, 100)
        self.assertAlmostEqual(estimator.ratio("alpha"), 1.8)
        self.assertEqual(estimator.ratio("beta"), 1.0)

    def test_calibration_is_clamped(self):
        estimator = TokenEstimator()
        estimator.calibrate("alpha", "a" * 4, 1000)
        self.assertEqual(estimator.ratio("alpha"), 4.0)


if __name__ == "__main__":
    unittest.main()
