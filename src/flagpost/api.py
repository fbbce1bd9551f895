from __future__ import annotations
import json
import logging
import datetime
import requests
from abc import abstractmethod
from collections.abc import Mapping
from typing import Any

from . import VERSION, ApiError, DictPayload


logger = logging.getLogger(__name__)


class RemoteFlagSource:
    """
    The remote side of flag evaluation: serves the definitions used for local
    evaluation and decides flags that can't be decided locally. Both methods
    raise ApiError when the request fails.
    """

    @abstractmethod
    def fetch_local_evaluation_flags(self, timeout: float | None = None) -> DictPayload:
        """
        Returns the raw local evaluation payload with flags, cohorts and
        group_type_mapping.
        """

    @abstractmethod
    def fetch_decide(
        self,
        distinct_id: str,
        person_properties: Mapping[str, Any],
        groups: Mapping[str, str],
        group_properties: Mapping[str, Mapping[str, Any]],
        timeout: float | None = None,
    ) -> DictPayload:
        """
        Returns {"featureFlags": {key: value}, "featureFlagPayloads": {key:
        payload}} for every flag of the actor.
        """


class EventSink:
    """
    Receives batches of captured events.
    """

    @abstractmethod
    def send_batch(self, events: list[DictPayload]) -> None: ...


def _json_default(o: Any) -> Any:
    if isinstance(o, (datetime.datetime, datetime.date)):
        return o.isoformat()
    if isinstance(o, (set, frozenset, tuple)):
        return list(o)
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")


class HttpApi(RemoteFlagSource, EventSink):
    """
    Talks to the flag service over HTTP with a requests session.

    Every failure, including timeouts, connection errors and non 2xx
    responses, is raised as an ApiError.
    """

    def __init__(
        self,
        api_key: str,
        host: str = "https://us.i.posthog.com",
        personal_api_key: str | None = None,
        timeout: float = 3.0,
        session: requests.Session | None = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.host = host.rstrip("/")
        self.personal_api_key = personal_api_key
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = f"flagpost-python/{VERSION}"

    def _request(self, method: str, path: str, timeout: float | None = None, **kwargs) -> Any:
        url = f"{self.host}{path}"
        if "json_body" in kwargs:
            kwargs["data"] = json.dumps(kwargs.pop("json_body"), default=_json_default)
            kwargs.setdefault("headers", {})["Content-Type"] = "application/json"
        try:
            r = self._session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ApiError(None, f"{method} {path} failed: {e}") from e
        if not 200 <= r.status_code < 300:
            try:
                body = r.json()
            except ValueError:
                body = None
            detail = body.get("detail", r.text) if isinstance(body, dict) else r.text
            raise ApiError(r.status_code, f"{method} {path}: {detail}")
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise ApiError(r.status_code, f"{method} {path}: invalid JSON response") from e

    def fetch_local_evaluation_flags(self, timeout: float | None = None) -> DictPayload:
        if not self.personal_api_key:
            raise ApiError(None, "a personal API key is required to fetch flag definitions")
        payload = self._request(
            "GET",
            "/api/feature_flag/local_evaluation/",
            timeout=timeout,
            params={"token": self.api_key, "send_cohorts": ""},
            headers={"Authorization": f"Bearer {self.personal_api_key}"},
        )
        if not isinstance(payload, dict):
            raise ApiError(None, "local evaluation response is not an object")
        return payload

    def fetch_decide(
        self,
        distinct_id: str,
        person_properties: Mapping[str, Any],
        groups: Mapping[str, str],
        group_properties: Mapping[str, Mapping[str, Any]],
        timeout: float | None = None,
    ) -> DictPayload:
        body = {
            "api_key": self.api_key,
            "distinct_id": distinct_id,
            "person_properties": dict(person_properties),
            "groups": dict(groups),
            "group_properties": {k: dict(v) for k, v in group_properties.items()},
        }
        payload = self._request("POST", "/decide/?v=3", timeout=timeout, json_body=body)
        if not isinstance(payload, dict):
            raise ApiError(None, "decide response is not an object")
        return {
            "featureFlags": payload.get("featureFlags") or {},
            "featureFlagPayloads": payload.get("featureFlagPayloads") or {},
        }

    def send_batch(self, events: list[DictPayload]) -> None:
        body = {
            "api_key": self.api_key,
            "historical_migrations": False,
            "batch": events,
        }
        self._request("POST", "/batch/", json_body=body)
        logger.debug("Posted %d events", len(events))

    def close(self):
        self._session.close()
