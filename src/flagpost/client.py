from __future__ import annotations
import os
import json
import time
import uuid
import logging
import datetime
import threading
import jsonschema
from collections.abc import Callable, Mapping
from dataclasses import dataclass, asdict
from typing import Any

from prometheus_client import Histogram

from . import (
    VERSION,
    ApiError,
    DictPayload,
    EvaluationContext,
    FlagEvaluator,
    FlagSnapshot,
    FlagValue,
    Group,
    LocalEvaluation,
    Outcome,
    Properties,
    RemoteEvaluationError,
)
from .api import EventSink, HttpApi, RemoteFlagSource
from .batching import EventBatcher, SentEventDedupeCache, Timer


logger = logging.getLogger(__name__)


with open(os.path.join(os.path.dirname(__file__), "options_schema.json")) as f:
    _options_schema = json.load(f)


_DEFAULT_FLUSH_AT = 20


@dataclass(slots=True)
class Options:
    """
    Client options. Durations are in seconds.

    flush_at defaults to 20, or to max_queue_size when that is smaller. An
    explicit flush_at larger than max_queue_size is rejected.
    """

    flush_at: int | None = None
    max_batch_size: int = 100
    max_queue_size: int = 1000
    flush_interval: float = 30.0
    feature_flag_poll_interval: float = 30.0
    feature_flag_sent_cache_size_limit: int = 50_000
    feature_flag_sent_cache_compaction_percentage: float = 0.2
    feature_flag_sent_cache_sliding_expiration: float = 600.0
    feature_flag_request_timeout: float = 3.0
    local_evaluation: bool = True

    def __post_init__(self):
        if self.flush_at is None:
            self.flush_at = min(_DEFAULT_FLUSH_AT, self.max_queue_size)
        elif self.flush_at > self.max_queue_size:
            raise ValueError("flush_at must not exceed max_queue_size")

    @staticmethod
    def from_dict(d: DictPayload) -> Options:
        """
        Build options from a plain dict, for example a parsed config file.
        Missing keys keep their defaults. Raises jsonschema.ValidationError for
        unknown keys and values of the wrong type or range, and ValueError if
        flush_at exceeds max_queue_size.
        """
        jsonschema.validate(d, _options_schema)
        return Options(**d)

    def to_dict(self) -> DictPayload:
        return asdict(self)


class FlagResult:
    """
    The final answer for a flag.

    enabled is None when the flag could not be decided, which only happens
    when remote evaluation was not allowed. definitive is False in that case.
    """

    __slots__ = ("key", "enabled", "variant", "payload", "definitive", "locally_evaluated")
    key: str
    enabled: bool | None
    variant: str | None
    payload: Any
    definitive: bool
    locally_evaluated: bool

    def __init__(
        self,
        key: str,
        enabled: bool | None,
        variant: str | None = None,
        payload: Any = None,
        definitive: bool = True,
        locally_evaluated: bool = False,
    ):
        self.key = key
        self.enabled = enabled
        self.variant = variant
        self.payload = payload
        self.definitive = definitive
        self.locally_evaluated = locally_evaluated

    @property
    def value(self) -> FlagValue | None:
        """
        The variant for multivariate flags, otherwise enabled.
        """
        if self.enabled and self.variant is not None:
            return self.variant
        return self.enabled

    @staticmethod
    def undetermined(key: str) -> FlagResult:
        return FlagResult(key, None, definitive=False, locally_evaluated=True)

    @staticmethod
    def from_local(e: LocalEvaluation) -> FlagResult:
        return FlagResult(
            e.flag,
            e.outcome is Outcome.MATCH,
            variant=e.variant,
            payload=_decode_payload(e.payload),
            locally_evaluated=True,
        )

    @staticmethod
    def from_remote(key: str, decide: DictPayload) -> FlagResult:
        value = decide["featureFlags"].get(key)
        if isinstance(value, str):
            return FlagResult(key, True, variant=value, payload=_decode_payload(decide["featureFlagPayloads"].get(key)))
        enabled = bool(value)
        payload = _decode_payload(decide["featureFlagPayloads"].get(key)) if enabled else None
        return FlagResult(key, enabled, payload=payload)

    def __eq__(self, other):
        if not isinstance(other, FlagResult):
            return NotImplemented
        return all(getattr(self, a) == getattr(other, a) for a in self.__slots__)

    def __repr__(self):
        return f"FlagResult({self.key!r}, value={self.value!r}, definitive={self.definitive}, locally_evaluated={self.locally_evaluated})"


def _decode_payload(payload: Any) -> Any:
    # Payloads are stored as JSON encoded strings; plain strings are kept as is.
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except ValueError:
            return payload
    return payload


class CapturedEvent:
    """
    An analytics event waiting to be sent.
    """

    __slots__ = ("event", "distinct_id", "properties", "timestamp", "uuid")

    def __init__(
        self,
        event: str,
        distinct_id: str,
        properties: Properties | None = None,
        timestamp: datetime.datetime | None = None,
    ):
        self.event = event
        self.distinct_id = distinct_id
        self.properties = dict(properties or {})
        self.timestamp = timestamp or datetime.datetime.now(datetime.timezone.utc)
        self.uuid = str(uuid.uuid4())

    def to_dict(self) -> DictPayload:
        return {
            "event": self.event,
            "distinct_id": self.distinct_id,
            "properties": self.properties,
            "timestamp": self.timestamp.isoformat(),
            "uuid": self.uuid,
        }

    def __repr__(self):
        return f"CapturedEvent({self.event!r}, {self.distinct_id!r})"


class FlagLoader:
    """
    Holds the current flag snapshot and refreshes it in a background thread.

    The first access fetches the definitions synchronously; afterwards
    evaluation never waits for a refresh. A failed refresh keeps the last good
    snapshot.
    """

    def __init__(
        self,
        source: RemoteFlagSource,
        poll_interval: float,
        timeout: float | None = None,
        snapshot: FlagSnapshot | None = None,
        now: Callable[[], datetime.datetime] | None = None,
    ):
        self._source = source
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._now = now
        self._mu = threading.Lock()
        self._load_mu = threading.Lock()
        self._evaluator: FlagEvaluator | None = None
        self._initial_load_done = False
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None
        if snapshot is not None:
            self._set(snapshot)

    def _set(self, snapshot: FlagSnapshot):
        evaluator = FlagEvaluator(snapshot, self._now) if self._now else FlagEvaluator(snapshot)
        with self._mu:
            self._evaluator = evaluator

    def evaluator(self) -> FlagEvaluator | None:
        """
        Returns the evaluator of the current snapshot, or None if no snapshot
        could be loaded yet.
        """
        with self._mu:
            evaluator = self._evaluator
        if evaluator is None and not self._initial_load_done:
            with self._load_mu:
                if not self._initial_load_done:
                    self.refresh()
                    self._initial_load_done = True
                    self._start_poller()
            with self._mu:
                evaluator = self._evaluator
        elif self._poller is None:
            with self._load_mu:
                self._initial_load_done = True
                self._start_poller()
        return evaluator

    @property
    def snapshot(self) -> FlagSnapshot | None:
        with self._mu:
            return self._evaluator.snapshot if self._evaluator else None

    def refresh(self) -> bool:
        """
        Fetch and compile the definitions and swap them in. Returns False and
        keeps the current snapshot if that failed.
        """
        try:
            payload = self._source.fetch_local_evaluation_flags(self._timeout)
            snapshot = FlagSnapshot.from_dict(payload)
        except ApiError as e:
            logger.error("[FEATURE FLAGS] Error loading feature flags: %s", e)
            return False
        except (jsonschema.ValidationError, ValueError, TypeError):
            logger.exception("[FEATURE FLAGS] Received invalid feature flag definitions")
            return False
        self._set(snapshot)
        logger.debug("[FEATURE FLAGS] Loaded %d feature flags", len(snapshot.flags))
        return True

    def _start_poller(self):
        if self._poller is not None or self._stop.is_set():
            return

        def _worker():
            while not self._stop.wait(self._poll_interval):
                try:
                    self.refresh()
                except Exception:
                    logger.exception("[FEATURE FLAGS] Error polling feature flags")

        self._poller = threading.Thread(target=_worker, name="flagpost-poller", daemon=True)
        self._poller.start()

    def stop(self):
        self._stop.set()
        if self._poller is not None:
            self._poller.join()


_prom_eval_duration = Histogram(
    "flagpost_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["outcome", "source"],
)


def _result_outcome(r: FlagResult) -> str:
    if r.enabled is None:
        return Outcome.INCONCLUSIVE.value
    return Outcome.of(r.enabled).value


class RemoteFallbackCoordinator:
    """
    Turns local evaluations into final results, asking the decision service
    for the flags that could not be decided locally.
    """

    def __init__(self, source: RemoteFlagSource, timeout: float | None = None):
        self._source = source
        self._timeout = timeout

    def _decide(self, context: EvaluationContext, timeout: float | None) -> DictPayload:
        groups = context.groups.values()
        try:
            return self._source.fetch_decide(
                context.distinct_id,
                context.person_properties,
                {g.group_type: g.group_key for g in groups},
                {g.group_type: g.properties for g in groups},
                timeout if timeout is not None else self._timeout,
            )
        except ApiError as e:
            raise RemoteEvaluationError(f"remote flag evaluation failed: {e}") from e

    def resolve(
        self,
        key: str,
        local: LocalEvaluation | None,
        context: EvaluationContext,
        only_evaluate_locally: bool = False,
        timeout: float | None = None,
    ) -> FlagResult:
        """
        local is None when there is no snapshot or the snapshot has no such
        flag.
        """
        if local is not None and local.outcome is not Outcome.INCONCLUSIVE:
            return FlagResult.from_local(local)
        if only_evaluate_locally:
            return FlagResult.undetermined(key)
        return FlagResult.from_remote(key, self._decide(context, timeout))

    def resolve_all(
        self,
        local: Mapping[str, LocalEvaluation] | None,
        context: EvaluationContext,
        only_evaluate_locally: bool = False,
        timeout: float | None = None,
    ) -> dict[str, FlagResult]:
        """
        local is None when there is no snapshot. Local definitive results are
        kept; one remote call decides all the others.
        """
        results: dict[str, FlagResult] = {}
        undecided: list[str] = []
        for key, e in (local or {}).items():
            if e.outcome is Outcome.INCONCLUSIVE:
                undecided.append(key)
            else:
                results[key] = FlagResult.from_local(e)

        if local is not None and not undecided:
            return results
        if only_evaluate_locally:
            for key in undecided:
                results[key] = FlagResult.undetermined(key)
            return results

        decide = self._decide(context, timeout)
        for key in undecided:
            results[key] = FlagResult.from_remote(key, decide)
        for key in decide["featureFlags"]:
            if key not in results:
                results[key] = FlagResult.from_remote(key, decide)
        return results


class Client:
    """
    Evaluates feature flags, locally when possible, and captures analytics
    events in batches. The client is thread-safe; call shutdown before the
    process exits so queued events are sent.
    """

    def __init__(
        self,
        api_key: str | None = None,
        host: str = "https://us.i.posthog.com",
        personal_api_key: str | None = None,
        options: Options | None = None,
        flag_source: RemoteFlagSource | None = None,
        event_sink: EventSink | None = None,
        snapshot: FlagSnapshot | None = None,
        timer: Timer | None = None,
        now: Callable[[], datetime.datetime] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options or Options()
        if flag_source is None or event_sink is None:
            if not api_key:
                raise ValueError("api_key is required unless flag_source and event_sink are given")
            http = HttpApi(
                api_key,
                host=host,
                personal_api_key=personal_api_key,
                timeout=self.options.feature_flag_request_timeout,
            )
            flag_source = flag_source or http
            event_sink = event_sink or http

        self._loader = None
        if self.options.local_evaluation:
            self._loader = FlagLoader(
                flag_source,
                self.options.feature_flag_poll_interval,
                timeout=self.options.feature_flag_request_timeout,
                snapshot=snapshot,
                now=now,
            )
        self._remote = RemoteFallbackCoordinator(flag_source, self.options.feature_flag_request_timeout)
        self._sent = SentEventDedupeCache(
            size_limit=self.options.feature_flag_sent_cache_size_limit,
            compaction_percentage=self.options.feature_flag_sent_cache_compaction_percentage,
            sliding_expiration=self.options.feature_flag_sent_cache_sliding_expiration,
            clock=clock,
        )
        self._batcher: EventBatcher[CapturedEvent] = EventBatcher(
            lambda batch: event_sink.send_batch([e.to_dict() for e in batch]),
            flush_at=self.options.flush_at,
            max_batch_size=self.options.max_batch_size,
            max_queue_size=self.options.max_queue_size,
            flush_interval=self.options.flush_interval,
            timer=timer,
        )
        self._shutdown_mu = threading.Lock()
        self._is_shut_down = False

    @staticmethod
    def _validate_properties(name: str, properties: Any):
        if properties is None:
            return
        if not isinstance(properties, Mapping):
            raise TypeError(f"{name} must be a dict, not {type(properties).__name__}")
        for k in properties:
            if not isinstance(k, str):
                raise TypeError(f"{name} keys must be strings, not {type(k).__name__}")

    def _context(
        self,
        distinct_id: str,
        person_properties: Properties | None,
        groups: Mapping[str, str] | None,
        group_properties: Mapping[str, Properties] | None,
    ) -> EvaluationContext:
        if not isinstance(distinct_id, str) or not distinct_id:
            raise TypeError(f"distinct_id must be a non empty string, not {distinct_id!r}")
        self._validate_properties("person_properties", person_properties)
        self._validate_properties("groups", groups)
        self._validate_properties("group_properties", group_properties)
        group_properties = group_properties or {}
        for props in group_properties.values():
            self._validate_properties("group properties", props)
        return EvaluationContext(
            distinct_id,
            person_properties,
            [Group(t, str(k), group_properties.get(t)) for t, k in (groups or {}).items()],
        )

    def _check_running(self):
        if self._is_shut_down:
            raise RuntimeError("client is shut down")

    def _evaluator(self) -> FlagEvaluator | None:
        return self._loader.evaluator() if self._loader else None

    def evaluate_flag(
        self,
        key: str,
        distinct_id: str,
        person_properties: Properties | None = None,
        groups: Mapping[str, str] | None = None,
        group_properties: Mapping[str, Properties] | None = None,
        only_evaluate_locally: bool = False,
        send_feature_flag_events: bool = True,
        timeout: float | None = None,
    ) -> FlagResult:
        """
        Evaluate one flag for the actor.

        key: The flag key.
        distinct_id: The id of the person.
        groups: Group type to group key, for group aggregated flags.
        group_properties: Group type to the properties of that group.
        only_evaluate_locally: Never call the decision service; flags that
            can't be decided locally come back undetermined.
        send_feature_flag_events: Capture a $feature_flag_called event the
            first time the actor gets this value.
        timeout: Bounds the remote request, if one is made.

        Raises RemoteEvaluationError if the decision service had to be asked
        and could not be reached.
        """
        self._check_running()
        if not isinstance(key, str):
            raise TypeError(f"key must be a string, not {type(key).__name__}")
        context = self._context(distinct_id, person_properties, groups, group_properties)

        start = time.perf_counter()
        evaluator = self._evaluator()
        local = evaluator.evaluate(key, context) if evaluator else None
        result = self._remote.resolve(key, local, context, only_evaluate_locally, timeout)
        _prom_eval_duration.labels(
            outcome=_result_outcome(result),
            source="local" if result.locally_evaluated else "remote",
        ).observe(time.perf_counter() - start)

        if send_feature_flag_events:
            self._capture_feature_flag_called(result, context, groups)
        return result

    def evaluate_all_flags(
        self,
        distinct_id: str,
        person_properties: Properties | None = None,
        groups: Mapping[str, str] | None = None,
        group_properties: Mapping[str, Properties] | None = None,
        only_evaluate_locally: bool = False,
        timeout: float | None = None,
    ) -> dict[str, FlagResult]:
        """
        Evaluate every flag for the actor with at most one remote call.
        """
        self._check_running()
        context = self._context(distinct_id, person_properties, groups, group_properties)
        evaluator = self._evaluator()
        local = None
        if evaluator is not None:
            local = {
                key: evaluator.evaluate_flag(flag, context, warn_on_unknown_groups=False)
                for key, flag in evaluator.snapshot.flags.items()
            }
        return self._remote.resolve_all(local, context, only_evaluate_locally, timeout)

    def is_feature_enabled(self, key: str, distinct_id: str, **kwargs) -> bool | None:
        """
        Returns whether the flag is enabled for the actor, None if it could not
        be decided. Takes the same arguments as evaluate_flag.
        """
        return self.evaluate_flag(key, distinct_id, **kwargs).enabled

    def get_feature_flag(self, key: str, distinct_id: str, **kwargs) -> FlagValue | None:
        """
        Returns the variant, or True/False for boolean flags. Takes the same
        arguments as evaluate_flag.
        """
        return self.evaluate_flag(key, distinct_id, **kwargs).value

    def _capture_feature_flag_called(self, result: FlagResult, context: EvaluationContext, groups: Mapping[str, str] | None):
        value = result.value
        if not self._sent.should_capture(context.distinct_id, result.key, value):
            return
        properties = {
            "$feature_flag": result.key,
            "$feature_flag_response": value,
            "locally_evaluated": result.locally_evaluated,
            f"$feature/{result.key}": value,
        }
        if result.payload is not None:
            properties["$feature_flag_payload"] = result.payload
        self.capture("$feature_flag_called", context.distinct_id, properties, groups)

    def capture(
        self,
        event: str,
        distinct_id: str,
        properties: Properties | None = None,
        groups: Mapping[str, str] | None = None,
        timestamp: datetime.datetime | None = None,
    ) -> bool:
        """
        Queue an analytics event. Returns False if the event was dropped
        because the client is shut down.
        """
        if not isinstance(event, str) or not event:
            raise TypeError(f"event must be a non empty string, not {event!r}")
        if not isinstance(distinct_id, str) or not distinct_id:
            raise TypeError(f"distinct_id must be a non empty string, not {distinct_id!r}")
        self._validate_properties("properties", properties)
        props = dict(properties or {})
        if groups:
            props["$groups"] = dict(groups)
        props["$lib"] = "flagpost-python"
        props["$lib_version"] = VERSION
        return self.record_event(CapturedEvent(event, distinct_id, props, timestamp))

    def identify_person(
        self,
        distinct_id: str,
        properties_to_set: Properties | None = None,
        properties_to_set_once: Properties | None = None,
    ) -> bool:
        """
        Queue an $identify event that sets person properties. Properties in
        properties_to_set_once don't overwrite values the person already has.
        """
        self._validate_properties("properties_to_set", properties_to_set)
        self._validate_properties("properties_to_set_once", properties_to_set_once)
        properties = {}
        if properties_to_set is not None:
            properties["$set"] = dict(properties_to_set)
        if properties_to_set_once is not None:
            properties["$set_once"] = dict(properties_to_set_once)
        return self.capture("$identify", distinct_id, properties)

    def identify_group(self, group_type: str, group_key: str, properties: Properties | None = None) -> bool:
        """
        Queue a $groupidentify event that sets the properties of a group.
        """
        if not isinstance(group_type, str) or not group_type:
            raise TypeError(f"group_type must be a non empty string, not {group_type!r}")
        self._validate_properties("properties", properties)
        group_key = str(group_key)
        return self.capture(
            "$groupidentify",
            f"${group_type}_{group_key}",
            {
                "$group_type": group_type,
                "$group_key": group_key,
                "$group_set": dict(properties or {}),
            },
        )

    def record_event(self, event: CapturedEvent) -> bool:
        """
        Queue an already built event as is.
        """
        return self._batcher.enqueue(event)

    def reload_feature_flags(self) -> bool:
        """
        Fetch the flag definitions now instead of waiting for the poller.
        """
        if self._loader is None:
            raise RuntimeError("local evaluation is disabled")
        return self._loader.refresh()

    @property
    def snapshot(self) -> FlagSnapshot | None:
        return self._loader.snapshot if self._loader else None

    def flush(self):
        """
        Send every queued event now. Raises if sending a batch failed.
        """
        self._batcher.flush()

    def shutdown(self):
        """
        Stop the poller, send the queued events and stop the batch worker.
        """
        with self._shutdown_mu:
            if self._is_shut_down:
                logger.warning("Client is already shut down")
                return
            self._is_shut_down = True
        if self._loader is not None:
            self._loader.stop()
        self._batcher.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
