"""
Tests for loading and validating extraction settings from the environment.
"""

import unittest

from llm.settings import (
    ExtractionSettings, LLMConfigError, ProviderSettings, load_settings,
    normalize_provider_name, normalize_fallback, require_valid_settings, validate_settings
)


class TestLoadSettings(unittest.TestCase):

    def test_defaults_with_legacy_key(self):
        settings = load_settings({"MEMORY_LLM_PRIMARY": "anthropic", "ANTHROPIC_API_KEY": "sk-ant-legacy"})

        self.assertEqual(settings.primary, "anthropic")
        self.assertIsNone(settings.fallback)
        self.assertEqual(settings.provider("anthropic").api_key, "sk-ant-legacy")
        self.assertEqual(settings.provider("anthropic").model, "claude-3-haiku-20240307")
        self.assertEqual(validate_settings(settings), [])

    def test_per_provider_variables_win(self):
        env = {
            "MEMORY_LLM_PRIMARY": "openai",
            "MEMORY_LLM_FALLBACK": "kobold",
            "MEMORY_LLM_API_KEY_OPENAI": "sk-new",
            "OPENAI_API_KEY": "sk-old",
            "MEMORY_LLM_MODEL_OPENAI": "gpt-4-turbo",
            "MEMORY_LLM_BASE_URL_KOBOLD": "http://gpu-box:5001",
            "MEMORY_LLM_DAILY_BUDGET_USD": "2.5",
            "MEMORY_LLM_MAX_RETRIES": "4",
            "MEMORY_LLM_STREAMING": "false",
            "MEMORY_LLM_RATE_BURST": "2",
        }
        settings = load_settings(env)

        self.assertEqual(settings.provider("openai").api_key, "sk-new")
        self.assertEqual(settings.provider("openai").model, "gpt-4-turbo")
        self.assertEqual(settings.provider("kobold").base_url, "http://gpu-box:5001")
        self.assertEqual(settings.daily_budget_usd, 2.5)
        self.assertEqual(settings.max_retries, 4)
        self.assertFalse(settings.streaming)
        self.assertEqual(settings.rate_limits.burst_capacity, 2)
        self.assertEqual(validate_settings(settings), [])

    def test_aliases(self):
        self.assertEqual(normalize_provider_name(" Claude "), "anthropic")
        self.assertEqual(normalize_provider_name("koboldcpp"), "kobold")
        settings = load_settings({"MEMORY_LLM_PRIMARY": "claude", "MEMORY_LLM_API_KEY_CLAUDE": "sk-ant-x"})
        self.assertEqual(settings.primary, "anthropic")
        self.assertEqual(settings.provider("claude").api_key, "sk-ant-x")

    def test_none_fallback(self):
        self.assertIsNone(normalize_fallback("none"))
        self.assertIsNone(normalize_fallback(""))
        self.assertIsNone(normalize_fallback(None))
        self.assertEqual(normalize_fallback("GPT"), "openai")

    def test_unparseable_numbers_use_defaults(self):
        settings = load_settings({
            "MEMORY_LLM_PRIMARY": "kobold",
            "MEMORY_LLM_MAX_RETRIES": "lots",
            "MEMORY_LLM_CIRCUIT_THRESHOLD": "",
        })
        self.assertEqual(settings.max_retries, 3)
        self.assertEqual(settings.circuit_threshold, 0.5)


class TestValidateSettings(unittest.TestCase):

    def _settings(self, **kwargs):
        providers = {
            "anthropic": ProviderSettings("anthropic", api_key="sk-ant-x", model="claude-3-haiku"),
            "openai": ProviderSettings("openai", api_key="", model="gpt-3.5-turbo"),
            "kobold": ProviderSettings("kobold", base_url="http://127.0.0.1:5001"),
        }
        kwargs.setdefault("primary", "anthropic")
        kwargs.setdefault("providers", providers)
        return ExtractionSettings(**kwargs)

    def test_missing_primary(self):
        self.assertIn("Primary provider is required", validate_settings(self._settings(primary="")))

    def test_unknown_primary(self):
        errors = validate_settings(self._settings(primary="mystery"))
        self.assertIn('Primary provider "mystery" is not configured', errors)

    def test_missing_api_key(self):
        errors = validate_settings(self._settings(primary="openai"))
        self.assertEqual(errors, ['Provider "openai" is missing API key'])

    def test_keyless_local_provider(self):
        self.assertEqual(validate_settings(self._settings(primary="kobold")), [])

    def test_fallback_checks(self):
        errors = validate_settings(self._settings(fallback="openai"))
        self.assertIn('Provider "openai" is missing API key', errors)

        errors = validate_settings(self._settings(fallback="anthropic"))
        self.assertIn("Fallback provider must differ from the primary provider", errors)

    def test_numeric_ranges(self):
        errors = validate_settings(self._settings(
            daily_budget_usd=-1, max_retries=0, circuit_threshold=1.5, call_timeout=0
        ))
        self.assertIn("Daily budget must be non-negative", errors)
        self.assertIn("Max retries must be at least 1", errors)
        self.assertIn("Circuit breaker threshold must be between 0 and 1", errors)
        self.assertIn("Call timeout must be positive", errors)

    def test_require_valid_settings_lists_all_errors(self):
        with self.assertRaises(LLMConfigError) as ctx:
            require_valid_settings(self._settings(primary="openai", max_retries=0))
        self.assertEqual(len(ctx.exception.errors), 2)


if __name__ == "__main__":
    unittest.main()
