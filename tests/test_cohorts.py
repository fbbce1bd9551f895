import datetime
import unittest

from flagpost import CohortNode, CohortResolver, Outcome, PropertyCondition

M, N, I = Outcome.MATCH, Outcome.NO_MATCH, Outcome.INCONCLUSIVE

_now = datetime.datetime(2024, 6, 15, tzinfo=datetime.timezone.utc)


def leaf(key, value, operator="exact", negation=False):
    return {"key": key, "value": value, "operator": operator, "type": "person", "negation": negation}


def cohort_ref(cohort_id, negation=False):
    return {"key": "id", "value": cohort_id, "type": "cohort", "negation": negation}


def node(type, *values):
    return {"type": type, "values": list(values)}


def resolver(cohorts):
    return CohortResolver({str(k): CohortNode.from_dict(v) for k, v in cohorts.items()})


class TestCohortResolver(unittest.TestCase):
    def test_empty_and_none(self):
        r = resolver({})
        self.assertIs(r.matches(None, {}, _now), M)
        self.assertIs(r.matches(CohortNode.from_dict(node("AND")), {}, _now), M)
        self.assertIs(r.matches(CohortNode.from_dict(node("OR")), {}, _now), M)

    def test_and_or(self):
        r = resolver({})
        cases = [
            (node("AND", leaf("a", 1), leaf("b", 2)), {"a": 1, "b": 2}, M),
            (node("AND", leaf("a", 1), leaf("b", 2)), {"a": 1, "b": 3}, N),
            (node("OR", leaf("a", 1), leaf("b", 2)), {"a": 0, "b": 2}, M),
            (node("OR", leaf("a", 1), leaf("b", 2)), {"a": 0, "b": 0}, N),
            # Inconclusive children don't short-circuit.
            (node("AND", leaf("missing", 1), leaf("b", 2)), {"b": 3}, N),
            (node("AND", leaf("missing", 1), leaf("b", 2)), {"b": 2}, I),
            (node("OR", leaf("missing", 1), leaf("b", 2)), {"b": 2}, M),
            (node("OR", leaf("missing", 1), leaf("b", 2)), {"b": 3}, I),
            # Negation applies to the leaf before short-circuiting.
            (node("AND", leaf("a", 1, negation=True)), {"a": 2}, M),
            (node("AND", leaf("a", 1, negation=True)), {"a": 1}, N),
            (node("OR", leaf("a", 1, negation=True), leaf("b", 2)), {"a": 1, "b": 3}, N),
            (node("AND", leaf("missing", 1, negation=True)), {}, I),
            # Mixed nodes and leaves, the parent's type decides.
            (node("OR", node("AND", leaf("a", 1), leaf("b", 2)), leaf("c", 3)), {"a": 1, "b": 0, "c": 3}, M),
            (node("OR", node("AND", leaf("a", 1), leaf("b", 2)), leaf("c", 3)), {"a": 1, "b": 0, "c": 0}, N),
            (node("AND", node("OR", leaf("a", 1), leaf("b", 2)), leaf("c", 3)), {"a": 0, "b": 2, "c": 3}, M),
            (node("AND", node("OR", leaf("a", 1), leaf("b", 2)), leaf("c", 3)), {"a": 1, "c": 4}, N),
        ]
        for tree, props, expected in cases:
            with self.subTest(tree=tree, props=props):
                self.assertIs(r.matches(CohortNode.from_dict(tree), props, _now), expected)

    def test_parent_type_controls_short_circuit(self):
        # An OR child that matches must not end an AND parent.
        r = resolver({})
        tree = CohortNode.from_dict(node("AND", node("OR", leaf("a", 1)), leaf("b", 2)))
        self.assertIs(r.matches(tree, {"a": 1, "b": 3}, _now), N)

    def test_cohort_references(self):
        r = resolver(
            {
                1: node("OR", node("AND", leaf("email", "@example.com", "icontains"))),
                2: node("AND", cohort_ref(1), leaf("plan", "pro")),
                3: node("AND", cohort_ref(1, negation=True)),
                4: node("AND", cohort_ref(99)),
            }
        )
        cases = [
            (1, {"email": "a@example.com"}, M),
            (1, {"email": "a@other.com"}, N),
            (2, {"email": "a@example.com", "plan": "pro"}, M),
            (2, {"email": "a@example.com", "plan": "free"}, N),
            (2, {"email": "a@other.com", "plan": "pro"}, N),
            (3, {"email": "a@other.com"}, M),
            (3, {"email": "a@example.com"}, N),
            (4, {"email": "a@example.com"}, I),
            ("1", {"email": "a@example.com"}, M),
        ]
        for cohort_id, props, expected in cases:
            with self.subTest(cohort_id=cohort_id, props=props):
                c = PropertyCondition.from_dict(cohort_ref(cohort_id))
                self.assertIs(r.match_condition(c, props, _now), expected)

    def test_unknown_cohort(self):
        r = resolver({})
        c = PropertyCondition.from_dict(cohort_ref(5))
        self.assertIs(r.match_condition(c, {"a": 1}, _now), I)

    def test_cycles_are_inconclusive(self):
        r = resolver(
            {
                1: node("AND", cohort_ref(2)),
                2: node("AND", cohort_ref(1)),
                3: node("OR", cohort_ref(3)),
            }
        )
        for cohort_id in [1, 2, 3]:
            with self.subTest(cohort_id=cohort_id):
                c = PropertyCondition.from_dict(cohort_ref(cohort_id))
                self.assertIs(r.match_condition(c, {}, _now), I)

    def test_cycle_does_not_hide_a_definite_mismatch(self):
        r = resolver({1: node("AND", cohort_ref(1), leaf("a", 1))})
        c = PropertyCondition.from_dict(cohort_ref(1))
        self.assertIs(r.match_condition(c, {"a": 2}, _now), N)

    def test_invalid_nodes(self):
        for raw in [node("XOR", leaf("a", 1)), {"type": "AND", "values": "nope"}, [1, 2]]:
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    CohortNode.from_dict(raw)
