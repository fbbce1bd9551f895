import unittest

import dill
import jsonschema

from flagpost import EvaluationContext, FlagEvaluator, FlagSnapshot, Outcome

_payload = {
    "flags": [
        {
            "id": 1,
            "key": "beta",
            "active": True,
            "filters": {
                "groups": [
                    {"properties": [{"key": "id", "value": 7, "type": "cohort"}], "rollout_percentage": 100},
                ],
                "payloads": {"true": '{"x": 1}'},
            },
        },
        {
            "id": 2,
            "key": "regex",
            "active": True,
            "filters": {"groups": [{"properties": [{"key": "email", "value": "[", "operator": "regex"}]}]},
        },
        {"id": 3, "key": "broken", "active": True, "filters": {"groups": [{"rollout_percentage": "half"}]}},
        {"id": 4, "active": True, "filters": {}},
        {"id": 5, "key": "beta", "active": False},
    ],
    "group_type_mapping": {"0": "company", "one": "project"},
    "cohorts": {
        "7": {"type": "AND", "values": [{"key": "plan", "value": "pro", "type": "person"}]},
        "8": {"type": "NAND", "values": []},
    },
}


class TestFlagSnapshot(unittest.TestCase):
    def test_from_dict(self):
        with self.assertLogs("flagpost", "WARNING") as logs:
            s = FlagSnapshot.from_dict(_payload)

        self.assertEqual(set(s.flags), {"beta", "regex", "broken"})
        self.assertTrue(s.flags["beta"].active)
        self.assertFalse(s.flags["beta"].malformed)
        self.assertTrue(s.flags["broken"].malformed)
        self.assertEqual(s.group_type_mapping, {0: "company"})
        self.assertEqual(set(s.cohorts), {"7"})

        output = "\n".join(logs.output)
        self.assertIn("invalid group type id: 'one'", output)
        self.assertIn("Skipping malformed cohort '8'", output)
        self.assertIn("Flag 'broken' is malformed", output)
        self.assertIn("Duplicate flag key 'beta'", output)

    def test_invalid_envelope(self):
        for payload in [{}, {"flags": "nope"}, {"flags": [1]}, {"flags": [], "cohorts": []}, {"flags": [], "group_type_mapping": {"0": 1}}]:
            with self.subTest(payload=payload):
                with self.assertRaises(jsonschema.ValidationError):
                    FlagSnapshot.from_dict(payload)

    def test_null_sections(self):
        s = FlagSnapshot.from_dict({"flags": [], "group_type_mapping": None, "cohorts": None})
        self.assertEqual((s.flags, s.cohorts, s.group_type_mapping), ({}, {}, {}))

    def test_invalid_regex_is_compiled_once_as_invalid(self):
        with self.assertLogs("flagpost", "WARNING"):
            s = FlagSnapshot.from_dict(_payload)
        ev = FlagEvaluator(s)
        e = ev.evaluate("regex", EvaluationContext("u", {"email": "["}))
        self.assertIs(e.outcome, Outcome.INCONCLUSIVE)

    def test_bytes_round_trip(self):
        with self.assertLogs("flagpost", "WARNING"):
            s = FlagSnapshot.from_dict(_payload)
        restored = FlagSnapshot.from_bytes(s.to_bytes())
        self.assertEqual(set(restored.flags), set(s.flags))
        self.assertEqual(restored.group_type_mapping, s.group_type_mapping)

        ev = FlagEvaluator(restored)
        e = ev.evaluate("beta", EvaluationContext("u", {"plan": "pro"}))
        self.assertEqual((e.outcome, e.payload), (Outcome.MATCH, '{"x": 1}'))
        e = ev.evaluate("beta", EvaluationContext("u", {"plan": "free"}))
        self.assertIs(e.outcome, Outcome.NO_MATCH)
        self.assertIs(ev.evaluate("broken", EvaluationContext("u")).outcome, Outcome.INCONCLUSIVE)

    def test_from_bytes_rejects_other_objects(self):
        with self.assertRaises(AssertionError):
            FlagSnapshot.from_bytes(dill.dumps({"flags": []}))
