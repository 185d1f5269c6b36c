"""
Tests for the provider factory.
"""

import unittest

from llm.anthropic_client import AnthropicProvider
from llm.factory import ProviderFactory
from llm.kobold_client import KoboldProvider
from llm.settings import ExtractionSettings, ProviderSettings
from llm.types import UnknownProviderError

from fakes import ScriptedProvider


def settings_for(*providers):
    return ExtractionSettings(
        primary=providers[0].name,
        providers={p.name: p for p in providers},
    )


class TestProviderFactory(unittest.TestCase):

    def test_builds_known_providers_from_settings(self):
        factory = ProviderFactory(settings_for(
            ProviderSettings("anthropic", api_key="sk-ant-abc", model="claude-3-haiku-20240307"),
        ))
        provider = factory.resolve("claude")

        self.assertIsInstance(provider, AnthropicProvider)
        self.assertEqual(provider.model, "claude-3-haiku-20240307")
        self.assertIs(factory.resolve("anthropic"), provider)

    def test_unknown_provider(self):
        factory = ProviderFactory()
        with self.assertRaises(UnknownProviderError) as ctx:
            factory.resolve("mystery")
        self.assertEqual(ctx.exception.name, "mystery")
        self.assertEqual(ctx.exception.kind, "unknown_provider")

    def test_register_custom_builder(self):
        factory = ProviderFactory(builders={})
        factory.register("scripted", lambda settings: ScriptedProvider("scripted", []))

        self.assertTrue(factory.has("scripted"))
        self.assertEqual(factory.available(), ["scripted"])
        self.assertEqual(factory.resolve("scripted").name, "scripted")

    def test_register_instance(self):
        factory = ProviderFactory(builders={})
        provider = ScriptedProvider("alpha", [])
        factory.register_instance("alpha", provider)
        self.assertIs(factory.resolve("alpha"), provider)

    def test_find_providers_by_capability(self):
        factory = ProviderFactory(
            settings_for(
                ProviderSettings("anthropic", api_key="sk-ant-abc", model="claude-3-haiku-20240307"),
                ProviderSettings("kobold", model="koboldcpp", base_url="http://127.0.0.1:5001"),
            ),
            builders={"anthropic": AnthropicProvider, "kobold": KoboldProvider},
        )

        self.assertEqual(factory.find_providers(streaming=True), ["anthropic"])
        self.assertEqual(factory.find_providers(local=True), ["kobold"])
        self.assertEqual(factory.find_providers(min_output_tokens=2000), ["anthropic"])
        self.assertEqual(factory.find_providers(min_input_tokens=500000), [])


if __name__ == "__main__":
    unittest.main()
