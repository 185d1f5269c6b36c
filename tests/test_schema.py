"""
Tests for the extraction response schema.
"""

import unittest

from pydantic import ValidationError

from memory.schema import ExtractionResult, validate_result, describe_validation_error

from fakes import memory_item, valid_payload


class TestExtractionSchema(unittest.TestCase):

    def test_valid_payload(self):
        result = validate_result(valid_payload(count=3))
        self.assertEqual(len(result.memories), 3)
        memory = result.memories[0]
        self.assertEqual(memory.emotional_context.primary_emotion, "pride")
        self.assertEqual(memory.significance.overall, 8)

    def test_snake_case_names_are_accepted(self):
        item = memory_item()
        item["emotional_context"] = item.pop("emotionalContext")
        result = ExtractionResult.model_validate({"schema_version": "memory_llm_response_v1", "memories": [item]})
        self.assertEqual(result.memories[0].emotional_context.intensity, 0.8)

    def test_wire_format_is_camel_case(self):
        wire = validate_result(valid_payload()).to_wire()
        self.assertEqual(wire["schemaVersion"], "memory_llm_response_v1")
        self.assertIn("emotionalContext", wire["memories"][0])
        self.assertIn("primaryEmotion", wire["memories"][0]["emotionalContext"])
        self.assertNotIn("id", wire["memories"][0])

    def test_optional_fields(self):
        item = memory_item()
        del item["relationshipDynamics"]
        del item["rationale"]
        item["emotionalContext"].pop("themes")
        memory = validate_result({"schemaVersion": "memory_llm_response_v1", "memories": [item]}).memories[0]
        self.assertIsNone(memory.relationship_dynamics)
        self.assertEqual(memory.emotional_context.themes, [])

    def test_extra_keys_are_ignored(self):
        payload = valid_payload()
        payload["memories"][0]["mood"] = "cheerful"
        validate_result(payload)

    def _assert_invalid(self, payload):
        with self.assertRaises(ValidationError):
            validate_result(payload)

    def test_memory_count_bounds(self):
        self._assert_invalid({"schemaVersion": "memory_llm_response_v1", "memories": []})
        self._assert_invalid(valid_payload(count=11))
        validate_result(valid_payload(count=10))

    def test_schema_version_must_match(self):
        payload = valid_payload()
        payload["schemaVersion"] = "v2"
        self._assert_invalid(payload)

    def test_field_bounds(self):
        cases = [
            ("content", "short"),
            ("content", "x" * 1201),
            ("confidence", 1.5),
            ("rationale", "r" * 801),
        ]
        for key, value in cases:
            with self.subTest(key=key):
                self._assert_invalid(valid_payload(**{key: value}))

    def test_emotional_context_bounds(self):
        for key, value in (
            ("intensity", 1.2),
            ("valence", -1.5),
            ("primaryEmotion", ""),
            ("secondaryEmotions", ["a", "b", "c", "d", "e", "f"]),
            ("themes", [str(i) for i in range(9)]),
        ):
            with self.subTest(key=key):
                payload = valid_payload()
                payload["memories"][0]["emotionalContext"][key] = value
                self._assert_invalid(payload)

    def test_significance_components_whitelist(self):
        payload = valid_payload()
        payload["memories"][0]["significance"]["components"] = {"made_up": 3}
        self._assert_invalid(payload)

        payload = valid_payload()
        payload["memories"][0]["significance"]["overall"] = 11
        self._assert_invalid(payload)

    def test_relationship_dynamics_limits(self):
        payload = valid_payload(relationshipDynamics={"favorite_color": "blue"})
        self._assert_invalid(payload)

        too_many = {
            "trust_level": "high",
            "conflict_present": False,
            "support_given": True,
            "support_received": True,
            "intimacy_level": 3,
            "shared_experience": "race",
        }
        self._assert_invalid(valid_payload(relationshipDynamics=too_many))
        self._assert_invalid(valid_payload(relationshipDynamics={"trust_level": "x" * 501}))

    def test_describe_validation_error(self):
        try:
            validate_result(valid_payload(content="short", confidence=2.0))
        except ValidationError as e:
            summary = describe_validation_error(e)
        self.assertIn("memories.0.content", summary)
        self.assertIn("memories.0.confidence", summary)


if __name__ == "__main__":
    unittest.main()
