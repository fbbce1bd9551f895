from __future__ import annotations
import re
import os
import json
import enum
import logging
import datetime
import operator
import dill
import jsonschema
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Literal, TypeAlias
from hashlib import sha1

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


logger = logging.getLogger(__name__)

VERSION = "0.1.0"

FlagValue: TypeAlias = bool | str
PropertyValue: TypeAlias = None | str | bool | int | float | list | tuple | set | datetime.date | datetime.datetime
Properties: TypeAlias = Mapping[str, PropertyValue]
DictPayload: TypeAlias = dict[str, Any]


class FlagpostError(Exception):
    """
    Base class of all errors raised by flagpost.
    """


class ApiError(FlagpostError):
    """
    A request to the remote service failed. status is the HTTP status code or
    None when the request never got a response.
    """

    def __init__(self, status: int | None, message: str):
        super().__init__(f"[{status}] {message}" if status is not None else message)
        self.status = status
        self.message = message


class RemoteEvaluationError(FlagpostError):
    """
    A flag could not be decided locally and the remote decision service could
    not be reached.
    """


class Outcome(enum.Enum):
    """
    The result of matching a condition, a cohort or a whole flag locally.
    INCONCLUSIVE means there is not enough information to decide and the remote
    decision service has to be asked instead.
    """

    MATCH = "match"
    NO_MATCH = "no_match"
    INCONCLUSIVE = "inconclusive"

    @staticmethod
    def of(matched: bool) -> Outcome:
        return Outcome.MATCH if matched else Outcome.NO_MATCH

    def negate(self) -> Outcome:
        match self:
            case Outcome.MATCH:
                return Outcome.NO_MATCH
            case Outcome.NO_MATCH:
                return Outcome.MATCH
            case _:
                return self


# 0xFFFFFFFFFFFFFFF is 60 bits, the width of 15 hex characters.
_HASH_MASK = 0xFFFFFFFFFFFFFFF
_LONG_SCALE = float(_HASH_MASK)


def bucket(flag_key: str, distinct_id: str, salt: str = "") -> float:
    """
    Hashes the flag key and distinct id to a float in the range [0, 1].

    The same inputs always give the same value and the values are uniformly
    distributed, so showing a feature to 20% of actors is `bucket(...) < 0.2`.
    Every SDK talking to the decision service computes exactly this, so the
    primitive (SHA-1), the key layout and the 60 bit truncation must never
    change or actors would flip between rollout buckets.
    """
    digest = sha1(f"{flag_key}.{distinct_id}{salt}".encode("utf-8")).hexdigest()
    return (int(digest[:15], 16) & _HASH_MASK) / _LONG_SCALE


def _stringify(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _to_number(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            return None
    return None


FilterValueKind: TypeAlias = Literal["str", "num", "bool", "str_list", "num_list"]


class FilterValue:
    """
    The reference value of a property condition. The JSON value is inspected
    once when the flag definitions are compiled and stored with its kind so
    that matching never has to guess the shape of the value.
    """

    __slots__ = ("kind", "value", "text")
    kind: FilterValueKind
    # str | float | bool | tuple[str, ...] | tuple[float, ...] depending on kind.
    value: Any
    # String form of the value used by substring, regex and string comparisons.
    text: str

    @staticmethod
    def parse(raw: Any) -> FilterValue | None:
        """
        Returns None for JSON null. Raises ValueError for values that can't be
        used as a reference value (objects).
        """
        fv = FilterValue()
        match raw:
            case None:
                return None
            case bool():
                fv.kind, fv.value = "bool", raw
            case int() | float():
                fv.kind, fv.value = "num", float(raw)
            case str():
                fv.kind, fv.value = "str", raw
            case list() | tuple():
                items = [v for v in raw if v is not None]
                if items and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in items):
                    fv.kind, fv.value = "num_list", tuple(float(v) for v in items)
                else:
                    for v in items:
                        if isinstance(v, (dict, list)):
                            raise ValueError(f"unsupported list element {v!r}")
                    fv.kind, fv.value = "str_list", tuple(_stringify(v) for v in items)
                fv.text = ", ".join(_stringify(v) for v in items)
                return fv
            case _:
                raise ValueError(f"unsupported filter value {raw!r}")
        fv.text = _stringify(raw)
        return fv

    def __repr__(self):
        return f"FilterValue({self.kind}, {self.value!r})"


class RelativeDate:
    """
    A date relative to now, written as `-<number><unit>` where unit is one of
    h (hours), d (days), w (weeks), m (months) or y (years).
    """

    __slots__ = ("number", "unit")
    number: int
    unit: str

    _re = re.compile(r"^-(?P<number>\d+)(?P<unit>[hdwmy])$", re.IGNORECASE)

    @staticmethod
    def parse(s: Any) -> RelativeDate | None:
        if not isinstance(s, str):
            return None
        m = RelativeDate._re.match(s.strip())
        if not m:
            return None
        number = int(m.group("number"))
        # Larger offsets overflow datetime arithmetic.
        if number >= 10_000:
            return None
        rd = RelativeDate()
        rd.number = number
        rd.unit = m.group("unit").lower()
        return rd

    def resolve(self, now: datetime.datetime) -> datetime.datetime:
        n = self.number
        match self.unit:
            case "h":
                return now - relativedelta(hours=n)
            case "d":
                return now - relativedelta(days=n)
            case "w":
                return now - relativedelta(weeks=n)
            case "m":
                return now - relativedelta(months=n)
            case "y":
                return now - relativedelta(years=n)
            case _:
                raise ValueError(f"unknown relative date unit {self.unit!r}")


def _parse_supplied_date(v: Any) -> datetime.datetime | None:
    match v:
        case datetime.datetime():
            dt = v
        case datetime.date():
            dt = datetime.datetime.combine(v, datetime.time())
        case str():
            try:
                dt = date_parser.parse(v)
            except (ValueError, OverflowError):
                return None
        case _:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


_REGEX_OPERATORS = {"regex", "not_regex"}
_DATE_OPERATORS = {"is_date_before", "is_date_after"}


class PropertyCondition:
    """
    A single comparison of an actor property against a reference value, or a
    reference to a cohort when type is "cohort".
    """

    __slots__ = (
        "key",
        "type",
        "operator",
        "value",
        "group_type_index",
        "negation",
        "_regex",
        "_relative_date",
    )
    key: str
    type: str
    operator: str
    value: FilterValue | None
    group_type_index: int | None
    negation: bool
    # Compiled pattern for regex operators, None if the pattern is invalid.
    _regex: re.Pattern | None
    # Parsed reference date for date operators, None if it can't be parsed.
    _relative_date: RelativeDate | None

    @staticmethod
    def from_dict(d: DictPayload) -> PropertyCondition:
        c = PropertyCondition()
        c.key = d["key"]
        c.type = d.get("type") or "person"
        c.operator = d.get("operator") or "exact"
        c.value = FilterValue.parse(d.get("value"))
        c.group_type_index = d.get("group_type_index")
        c.negation = bool(d.get("negation", False))
        c._regex = None
        c._relative_date = None
        if c.operator in _REGEX_OPERATORS and c.value is not None and c.value.kind == "str" and c.value.value:
            try:
                c._regex = re.compile(c.value.value)
            except re.error:
                logger.debug("invalid regex %r in condition on %r", c.value.value, c.key)
        if c.operator in _DATE_OPERATORS and c.value is not None:
            c._relative_date = RelativeDate.parse(c.value.value)
        return c

    def __repr__(self):
        return f"PropertyCondition({self.key!r} {self.operator} {self.value!r})"


def _scalar_equals(kind: FilterValueKind, ref: Any, supplied: Any) -> bool:
    match kind:
        case "num":
            n = _to_number(supplied)
            return n is not None and n == ref
        case "bool":
            if isinstance(supplied, bool):
                return supplied == ref
            return isinstance(supplied, str) and supplied.strip().lower() == _stringify(ref)
        case _:
            if isinstance(supplied, (int, float)) and not isinstance(supplied, bool):
                n = _to_number(ref)
                if n is not None:
                    return n == float(supplied)
            return _stringify(supplied).casefold() == ref.casefold()


def _is_exact(ref: FilterValue, supplied: Any) -> bool:
    match ref.kind:
        case "str_list":
            return any(_scalar_equals("str", r, supplied) for r in ref.value)
        case "num_list":
            n = _to_number(supplied)
            return n is not None and n in ref.value
        case _:
            return _scalar_equals(ref.kind, ref.value, supplied)


_comparison_ops = {
    "gt": operator.gt,
    "lt": operator.lt,
    "gte": operator.ge,
    "lte": operator.le,
}


def _compare(op: str, ref: FilterValue, supplied: Any) -> Outcome:
    if ref.kind not in {"num", "str"}:
        return Outcome.INCONCLUSIVE
    ref_num = ref.value if ref.kind == "num" else _to_number(ref.value)
    supplied_num = _to_number(supplied)
    if ref_num is not None and supplied_num is not None:
        return Outcome.of(_comparison_ops[op](supplied_num, ref_num))
    return Outcome.of(_comparison_ops[op](_stringify(supplied), ref.text))


def match_property(condition: PropertyCondition, properties: Properties, now: datetime.datetime) -> Outcome:
    """
    Match one property condition against the supplied properties of an actor.

    A missing property is INCONCLUSIVE because the decision service may know
    its value. A property supplied as None is a definite NO_MATCH except for
    is_not. Malformed reference values, unknown operators and unparsable dates
    are INCONCLUSIVE so that evaluation falls back to the decision service
    instead of guessing.
    """
    if condition.key not in properties:
        return Outcome.INCONCLUSIVE
    supplied = properties[condition.key]
    op = condition.operator

    if supplied is None and op != "is_not":
        return Outcome.NO_MATCH

    ref = condition.value
    if ref is None:
        return Outcome.INCONCLUSIVE

    match op:
        case "exact":
            return Outcome.of(supplied is not None and _is_exact(ref, supplied))
        case "is_not":
            return Outcome.of(supplied is None or not _is_exact(ref, supplied))
        case "gt" | "lt" | "gte" | "lte":
            return _compare(op, ref, supplied)
        case "icontains":
            return Outcome.of(ref.text.casefold() in _stringify(supplied).casefold())
        case "not_icontains":
            return Outcome.of(ref.text.casefold() not in _stringify(supplied).casefold())
        case "regex" | "not_regex":
            if condition._regex is None:
                return Outcome.INCONCLUSIVE
            found = condition._regex.search(_stringify(supplied)) is not None
            return Outcome.of(found if op == "regex" else not found)
        case "is_set":
            return Outcome.MATCH
        case "is_date_before" | "is_date_after":
            if condition._relative_date is None:
                return Outcome.INCONCLUSIVE
            supplied_date = _parse_supplied_date(supplied)
            if supplied_date is None:
                return Outcome.INCONCLUSIVE
            before = supplied_date < condition._relative_date.resolve(now)
            return Outcome.of(before if op == "is_date_before" else not before)
        case _:
            return Outcome.INCONCLUSIVE


class CohortNode:
    """
    An AND/OR node of a cohort filter tree. Values are nested nodes or leaf
    property conditions, leaves of type "cohort" reference other cohorts.
    """

    __slots__ = ("type", "values")
    type: Literal["AND", "OR"]
    values: tuple[CohortNode | PropertyCondition, ...]

    @staticmethod
    def from_dict(d: DictPayload) -> CohortNode:
        if not isinstance(d, dict):
            raise ValueError(f"cohort node must be an object, not {type(d).__name__}")
        t = str(d.get("type", "AND")).upper()
        if t not in {"AND", "OR"}:
            raise ValueError(f"unknown cohort node type {t!r}")
        values = d.get("values") or []
        if not isinstance(values, list):
            raise ValueError("cohort node values must be a list")
        n = CohortNode()
        n.type = t
        n.values = tuple(
            CohortNode.from_dict(v) if isinstance(v, dict) and "values" in v and "key" not in v else PropertyCondition.from_dict(v)
            for v in values
        )
        return n


class CohortResolver:
    """
    Evaluates cohort filter trees against the properties of an actor.
    """

    __slots__ = ("_cohorts",)

    def __init__(self, cohorts: Mapping[str, CohortNode]):
        self._cohorts = cohorts

    def match_condition(
        self,
        condition: PropertyCondition,
        properties: Properties,
        now: datetime.datetime,
        _seen: frozenset[str] = frozenset(),
    ) -> Outcome:
        """
        Match a leaf condition, resolving it through the cohort map when it
        references a cohort.
        """
        if condition.type != "cohort":
            return match_property(condition, properties, now)
        cohort_id = condition.value.text if condition.value is not None else None
        node = self._cohorts.get(cohort_id) if cohort_id is not None else None
        if node is None:
            logger.debug("[FEATURE FLAGS] unknown cohort %r", cohort_id)
            return Outcome.INCONCLUSIVE
        if cohort_id in _seen:
            logger.warning("[FEATURE FLAGS] circular reference to cohort %r", cohort_id)
            return Outcome.INCONCLUSIVE
        return self.matches(node, properties, now, _seen | {cohort_id})

    def matches(
        self,
        node: CohortNode | None,
        properties: Properties,
        now: datetime.datetime,
        _seen: frozenset[str] = frozenset(),
    ) -> Outcome:
        """
        Evaluate an AND/OR node.

        AND returns NO_MATCH at the first definite mismatch and OR returns MATCH
        at the first definite match. Inconclusive children never short-circuit;
        if no child did, any inconclusive child makes the node INCONCLUSIVE.
        """
        if node is None or not node.values:
            return Outcome.MATCH

        inconclusive = False
        for child in node.values:
            if isinstance(child, CohortNode):
                outcome = self.matches(child, properties, now, _seen)
            else:
                outcome = self.match_condition(child, properties, now, _seen)
                if child.negation:
                    outcome = outcome.negate()

            if outcome is Outcome.INCONCLUSIVE:
                logger.debug("failed to compute %r locally", child)
                inconclusive = True
            elif node.type == "AND" and outcome is Outcome.NO_MATCH:
                return Outcome.NO_MATCH
            elif node.type == "OR" and outcome is Outcome.MATCH:
                return Outcome.MATCH

        if inconclusive:
            return Outcome.INCONCLUSIVE
        # All matched in the AND case, none matched in the OR case.
        return Outcome.of(node.type == "AND")


class ConditionGroup:
    __slots__ = ("properties", "rollout_percentage", "variant")
    properties: tuple[PropertyCondition, ...]
    rollout_percentage: float
    variant: str | None

    @staticmethod
    def from_dict(d: DictPayload) -> ConditionGroup:
        g = ConditionGroup()
        g.properties = tuple(PropertyCondition.from_dict(p) for p in d.get("properties") or [])
        rollout = d.get("rollout_percentage")
        g.rollout_percentage = 100.0 if rollout is None else float(rollout)
        g.variant = d.get("variant")
        return g


class Variant:
    __slots__ = ("key", "rollout_percentage")
    key: str
    rollout_percentage: float

    @staticmethod
    def from_dict(d: DictPayload) -> Variant:
        v = Variant()
        v.key = d["key"]
        v.rollout_percentage = float(d.get("rollout_percentage") or 0)
        return v


with open(os.path.join(os.path.dirname(__file__), "local_evaluation_schema.json")) as f:
    _local_evaluation_schema = json.load(f)

_flag_schema = {"$defs": _local_evaluation_schema["$defs"], "$ref": "#/$defs/flag"}


class FlagDefinition:
    """
    The definition of a single flag as served by the local evaluation endpoint.
    Definitions are never mutated, a refresh replaces the whole snapshot.
    """

    __slots__ = (
        "id",
        "key",
        "active",
        "groups",
        "variants",
        "payloads",
        "aggregation_group_type_index",
        "ensure_experience_continuity",
        "malformed",
    )
    id: int | None
    key: str
    active: bool
    # Condition groups in evaluation order: groups with a variant override
    # first, original order preserved within both subsets.
    groups: tuple[ConditionGroup, ...]
    variants: tuple[Variant, ...]
    payloads: dict[str, Any]
    aggregation_group_type_index: int | None
    ensure_experience_continuity: bool
    # Set when the definition could not be compiled. Such a flag is always
    # evaluated as inconclusive.
    malformed: bool

    @staticmethod
    def from_dict(d: DictPayload) -> FlagDefinition:
        """
        Compile the JSON definition of a flag. Raises jsonschema.ValidationError
        or ValueError if the definition is malformed.
        """
        jsonschema.validate(d, _flag_schema)

        filters = d.get("filters") or {}
        fd = FlagDefinition()
        fd.id = d.get("id")
        fd.key = d["key"]
        fd.active = bool(d.get("active")) and not d.get("deleted", False)
        groups = [ConditionGroup.from_dict(g) for g in filters.get("groups") or []]
        # sort() is stable.
        groups.sort(key=lambda g: g.variant is None)
        fd.groups = tuple(groups)
        multivariate = filters.get("multivariate") or {}
        fd.variants = tuple(Variant.from_dict(v) for v in multivariate.get("variants") or [])
        fd.payloads = dict(filters.get("payloads") or {})
        fd.aggregation_group_type_index = filters.get("aggregation_group_type_index")
        fd.ensure_experience_continuity = bool(d.get("ensure_experience_continuity"))
        fd.malformed = False
        return fd

    @staticmethod
    def malformed_flag(key: str) -> FlagDefinition:
        fd = FlagDefinition()
        fd.id = None
        fd.key = key
        fd.active = True
        fd.groups = ()
        fd.variants = ()
        fd.payloads = {}
        fd.aggregation_group_type_index = None
        fd.ensure_experience_continuity = False
        fd.malformed = True
        return fd

    def payload_for(self, value: FlagValue | None) -> Any:
        """
        Look up the payload for the given flag value: by variant key for
        multivariate flags and by "true" for enabled boolean flags.
        """
        if value is True:
            return self.payloads.get("true")
        if isinstance(value, str):
            return self.payloads.get(value)
        return None


class FlagSnapshot:
    """
    Immutable set of flag definitions, cohorts and the group type mapping
    fetched in one request. Evaluation always works on a single snapshot.
    """

    __slots__ = ("flags", "cohorts", "group_type_mapping")
    flags: dict[str, FlagDefinition]
    cohorts: dict[str, CohortNode]
    group_type_mapping: dict[int, str]

    @staticmethod
    def from_bytes(b: bytes) -> FlagSnapshot:
        obj = dill.loads(b)
        assert isinstance(obj, FlagSnapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def empty() -> FlagSnapshot:
        s = FlagSnapshot()
        s.flags = {}
        s.cohorts = {}
        s.group_type_mapping = {}
        return s

    @staticmethod
    def from_dict(payload: DictPayload) -> FlagSnapshot:
        """
        Compile the payload of the local evaluation endpoint.

        An invalid envelope raises jsonschema.ValidationError. Individual flags
        that fail to compile are kept as malformed flags and cohorts that fail
        to compile are dropped, so they can still be decided remotely.
        """
        jsonschema.validate(payload, _local_evaluation_schema)

        s = FlagSnapshot.empty()

        for raw_id, name in (payload.get("group_type_mapping") or {}).items():
            try:
                s.group_type_mapping[int(raw_id)] = name
            except ValueError:
                logger.error("Group type mapping has an invalid group type id: %r. Skipping it.", raw_id)

        for cohort_id, raw in (payload.get("cohorts") or {}).items():
            try:
                s.cohorts[str(cohort_id)] = CohortNode.from_dict(raw)
            except (ValueError, KeyError, TypeError):
                logger.exception("[FEATURE FLAGS] Skipping malformed cohort %r", cohort_id)

        for raw in payload["flags"]:
            key = raw.get("key")
            if not isinstance(key, str) or not key:
                logger.error("[FEATURE FLAGS] Skipping flag without a key: %r", raw.get("id"))
                continue
            if key in s.flags:
                logger.warning("[FEATURE FLAGS] Duplicate flag key %r, keeping the first", key)
                continue
            try:
                s.flags[key] = FlagDefinition.from_dict(raw)
            except (jsonschema.ValidationError, ValueError, KeyError, TypeError):
                logger.warning("[FEATURE FLAGS] Flag %r is malformed and will be evaluated remotely", key, exc_info=True)
                s.flags[key] = FlagDefinition.malformed_flag(key)

        return s


class Group:
    """
    A group (organization, project, ...) the actor belongs to, with the group
    properties known to the caller.
    """

    __slots__ = ("group_type", "group_key", "properties")

    def __init__(self, group_type: str, group_key: str, properties: Properties | None = None):
        self.group_type = group_type
        self.group_key = group_key
        self.properties = dict(properties or {})

    def __repr__(self):
        return f"Group({self.group_type!r}, {self.group_key!r})"


class EvaluationContext:
    """
    Everything known about the actor a flag is evaluated for.
    """

    __slots__ = ("distinct_id", "person_properties", "groups")

    def __init__(
        self,
        distinct_id: str,
        person_properties: Properties | None = None,
        groups: Iterable[Group] = (),
    ):
        self.distinct_id = distinct_id
        self.person_properties = dict(person_properties or {})
        self.groups = {g.group_type: g for g in groups}


EvaluationReason: TypeAlias = Literal[
    "inactive",
    "experience_continuity",
    "unknown_group_type",
    "group_not_supplied",
    "malformed",
    "condition_match",
    "no_condition_match",
    "inconclusive",
]


class LocalEvaluation:
    """
    The result of evaluating a flag locally.
    """

    __slots__ = ("flag", "outcome", "variant", "payload", "reason", "condition_index")
    flag: str
    outcome: Outcome
    # Matched variant of a multivariate flag.
    variant: str | None
    payload: Any
    reason: EvaluationReason
    # Index (in evaluation order) of the condition group that matched, -1 if none.
    condition_index: int

    @property
    def value(self) -> FlagValue | None:
        """
        The flag value: the variant key, True or False, or None if
        inconclusive.
        """
        if self.outcome is Outcome.INCONCLUSIVE:
            return None
        if self.outcome is Outcome.MATCH:
            return self.variant if self.variant is not None else True
        return False


def _local_evaluation(flag: str, outcome: Outcome, reason: EvaluationReason) -> LocalEvaluation:
    e = LocalEvaluation()
    e.flag = flag
    e.outcome = outcome
    e.variant = None
    e.payload = None
    e.reason = reason
    e.condition_index = -1
    return e


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class FlagEvaluator:
    """
    Evaluates flags of one snapshot locally. The evaluator holds no mutable
    state and is safe to share between threads.
    """

    __slots__ = ("snapshot", "_cohorts", "_now")

    def __init__(self, snapshot: FlagSnapshot, now: Callable[[], datetime.datetime] = _utcnow):
        self.snapshot = snapshot
        self._cohorts = CohortResolver(snapshot.cohorts)
        self._now = now

    def evaluate(self, key: str, context: EvaluationContext, warn_on_unknown_groups: bool = True) -> LocalEvaluation | None:
        """
        Evaluate the flag with the given key. Returns None if the snapshot has
        no such flag.
        """
        flag = self.snapshot.flags.get(key)
        if flag is None:
            return None
        return self.evaluate_flag(flag, context, warn_on_unknown_groups)

    def evaluate_flag(self, flag: FlagDefinition, context: EvaluationContext, warn_on_unknown_groups: bool = True) -> LocalEvaluation:
        if flag.malformed:
            return _local_evaluation(flag.key, Outcome.INCONCLUSIVE, "malformed")

        if not flag.active:
            return _local_evaluation(flag.key, Outcome.NO_MATCH, "inactive")

        # The decision service owns flags that must stay stable across identity
        # changes.
        if flag.ensure_experience_continuity:
            return _local_evaluation(flag.key, Outcome.INCONCLUSIVE, "experience_continuity")

        if flag.aggregation_group_type_index is not None:
            group_type = self.snapshot.group_type_mapping.get(flag.aggregation_group_type_index)
            if group_type is None:
                logger.warning(
                    "[FEATURE FLAGS] Unknown group type index %s for feature flag %s",
                    flag.aggregation_group_type_index,
                    flag.key,
                )
                return _local_evaluation(flag.key, Outcome.INCONCLUSIVE, "unknown_group_type")
            group = context.groups.get(group_type)
            if group is None:
                # The decision service would answer the same, don't ask it.
                log = logger.warning if warn_on_unknown_groups else logger.debug
                log("[FEATURE FLAGS] Can't compute group feature flag: %s without group types passed in", flag.key)
                return _local_evaluation(flag.key, Outcome.NO_MATCH, "group_not_supplied")
            return self._match_conditions(flag, group.group_key, group.properties)

        return self._match_conditions(flag, context.distinct_id, context.person_properties)

    def _match_conditions(self, flag: FlagDefinition, actor_key: str, properties: Properties) -> LocalEvaluation:
        now = self._now()
        inconclusive = False
        for i, group in enumerate(flag.groups):
            outcome = self._match_group(flag, group, actor_key, properties, now)
            if outcome is Outcome.INCONCLUSIVE:
                inconclusive = True
                continue
            if outcome is Outcome.NO_MATCH:
                continue
            e = _local_evaluation(flag.key, Outcome.MATCH, "condition_match")
            e.condition_index = i
            variant_keys = {v.key for v in flag.variants}
            if group.variant is not None and group.variant in variant_keys:
                e.variant = group.variant
            else:
                e.variant = self._matching_variant(flag, actor_key)
            e.payload = flag.payload_for(e.value)
            return e

        # False is only certain when no condition group was inconclusive.
        if inconclusive:
            return _local_evaluation(flag.key, Outcome.INCONCLUSIVE, "inconclusive")
        return _local_evaluation(flag.key, Outcome.NO_MATCH, "no_condition_match")

    def _match_group(
        self,
        flag: FlagDefinition,
        group: ConditionGroup,
        actor_key: str,
        properties: Properties,
        now: datetime.datetime,
    ) -> Outcome:
        inconclusive = False
        for condition in group.properties:
            outcome = self._cohorts.match_condition(condition, properties, now)
            if outcome is Outcome.NO_MATCH:
                return Outcome.NO_MATCH
            if outcome is Outcome.INCONCLUSIVE:
                logger.debug("failed to compute %r locally for flag %s", condition, flag.key)
                inconclusive = True
        if inconclusive:
            return Outcome.INCONCLUSIVE
        if group.rollout_percentage >= 100:
            return Outcome.MATCH
        return Outcome.of(bucket(flag.key, actor_key) < group.rollout_percentage / 100)

    @staticmethod
    def _matching_variant(flag: FlagDefinition, actor_key: str) -> str | None:
        if not flag.variants:
            return None
        h = bucket(flag.key, actor_key, salt="variant")
        start = 0.0
        for v in flag.variants:
            end = start + v.rollout_percentage / 100
            if start <= h < end:
                return v.key
            start = end
        return None
