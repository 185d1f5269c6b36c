"""
Tests for the response repair pipeline.

Covers the common ways models mangle JSON: prose around the object, code
fences, trailing commas, bare keys, truncation and the legacy singular
`memory` shape.
"""

import json
import unittest

from core.metrics import MetricsSink
from llm.types import ErrorKind, ProviderError
from memory.repair import ResponseRepairPipeline, adapt_legacy, balance_json, strip_prose

from fakes import memory_item, valid_json, valid_payload


class TestRepairHelpers(unittest.TestCase):

    def test_strip_prose_finds_outer_object(self):
        self.assertEqual(strip_prose('Here you go: {"a": {"b": 1}} thanks!'), '{"a": {"b": 1}}')

    def test_strip_prose_prefers_fenced_block(self):
        text = 'Notes {not json}\n```json\n{"a": 1}\n```'
        self.assertEqual(strip_prose(text).strip(), '{"a": 1}')

    def test_strip_prose_without_object(self):
        self.assertIsNone(strip_prose("no braces here"))

    def test_balance_closes_structures(self):
        self.assertEqual(json.loads(balance_json('{"a": [1, 2')), {"a": [1, 2]})
        self.assertEqual(json.loads(balance_json('{"a": "unfinished')), {"a": "unfinished"})
        self.assertEqual(json.loads(balance_json('{"a": 1, "b":')), {"a": 1, "b": None})

    def test_balance_leaves_string_contents_alone(self):
        text = '{"content": "lists, like [this, one], stay", note: 1,}'
        self.assertEqual(
            json.loads(balance_json(text)),
            {"content": "lists, like [this, one], stay", "note": 1},
        )

    def test_adapt_legacy_shapes(self):
        item = memory_item()
        self.assertEqual(adapt_legacy({"memory": item})["memories"], [item])
        self.assertEqual(adapt_legacy([item])["memories"], [item])
        self.assertEqual(adapt_legacy(item)["memories"], [item])
        self.assertEqual(adapt_legacy({"memories": [item]})["schemaVersion"], "memory_llm_response_v1")
        self.assertIsNone(adapt_legacy({"unrelated": True}))
        self.assertIsNone(adapt_legacy("text"))


class TestResponseRepairPipeline(unittest.TestCase):

    def setUp(self):
        self.metrics = MetricsSink()
        self.pipeline = ResponseRepairPipeline(metrics=self.metrics)

    def test_valid_json_passes_directly(self):
        outcome = self.pipeline.repair(valid_json(count=2))
        self.assertEqual(outcome.pass_name, "direct")
        self.assertEqual(outcome.repair_attempts, 0)
        self.assertEqual(outcome.statistics.total_memories, 2)
        self.assertAlmostEqual(outcome.statistics.average_confidence, 0.8)
        self.assertFalse(outcome.legacy)

    def test_prose_wrapped_json(self):
        text = f"Sure! Here are the memories:\n{valid_json()}\nLet me know if you need more."
        outcome = self.pipeline.repair(text)
        self.assertEqual(outcome.pass_name, "strip_prose")

    def test_code_fenced_json(self):
        outcome = self.pipeline.repair(f"```json\n{valid_json()}\n```")
        self.assertEqual(outcome.pass_name, "strip_prose")
        self.assertEqual(self.metrics.value("recall_repair_attempts_total", {"result": "success"}), 1.0)

    def test_trailing_commas(self):
        text = valid_json().replace('"joy"]', '"joy",]').replace("}]}", "},]}")
        outcome = self.pipeline.repair(text)
        self.assertEqual(outcome.pass_name, "balance")

    def test_bare_keys(self):
        text = valid_json().replace('"schemaVersion":', "schemaVersion:").replace('"confidence":', "confidence:")
        outcome = self.pipeline.repair(text)
        self.assertEqual(outcome.pass_name, "balance")
        self.assertAlmostEqual(outcome.result.memories[0].confidence, 0.8)

    def test_truncated_response(self):
        text = valid_json()
        outcome = self.pipeline.repair(text[:text.rindex("}]}")])
        self.assertEqual(outcome.pass_name, "balance")
        self.assertAlmostEqual(outcome.result.memories[0].confidence, 0.8)

    def test_legacy_singular_memory_keeps_every_field(self):
        item = memory_item(id="mem-1")
        outcome = self.pipeline.repair(json.dumps({"memory": item}))

        self.assertTrue(outcome.legacy)
        self.assertEqual(outcome.pass_name, "legacy")
        memory = outcome.result.memories[0]
        self.assertEqual(memory.id, "mem-1")
        self.assertEqual(memory.content, item["content"])
        self.assertEqual(memory.rationale, item["rationale"])
        self.assertEqual(memory.relationship_dynamics, {"trust_level": "high", "support_given": True})
        self.assertEqual(memory.significance.components["milestone_achievement"], 9)
        self.assertEqual(memory.emotional_context.secondary_emotions, ["relief", "joy"])

    def test_repair_is_idempotent_on_its_output(self):
        first = self.pipeline.repair("```\n" + valid_json() + "\n```")
        second = self.pipeline.repair(json.dumps(first.result.to_wire()))
        self.assertEqual(second.pass_name, "direct")
        self.assertEqual(second.result, first.result)

    def test_unrepairable_text_is_parsing_error(self):
        with self.assertRaises(ProviderError) as ctx:
            self.pipeline.repair("I can't help with that request.")
        self.assertEqual(ctx.exception.kind, ErrorKind.PARSING)
        self.assertEqual(self.metrics.value("recall_repair_attempts_total", {"result": "failure"}), 1.0)

    def test_schema_violation_is_parsing_error(self):
        payload = valid_payload()
        payload["memories"][0]["content"] = "too short"
        with self.assertRaises(ProviderError) as ctx:
            self.pipeline.repair(json.dumps(payload))
        self.assertEqual(ctx.exception.kind, ErrorKind.PARSING)
        self.assertIn("content", ctx.exception.message)
        self.assertGreaterEqual(
            self.metrics.value("recall_schema_validations_total", {"result": "failure"}), 1.0
        )

    def test_wrong_schema_version_is_rejected(self):
        payload = valid_payload()
        payload["schemaVersion"] = "memory_llm_response_v0"
        with self.assertRaises(ProviderError):
            self.pipeline.repair(json.dumps(payload))


if __name__ == "__main__":
    unittest.main()
