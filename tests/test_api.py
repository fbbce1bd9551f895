import json
import datetime
import unittest
from unittest import mock

import requests

from flagpost import ApiError
from flagpost.api import HttpApi


def response(status, body=None, raw=None):
    r = requests.Response()
    r.status_code = status
    if raw is not None:
        r._content = raw
    else:
        r._content = json.dumps(body).encode() if body is not None else b""
    return r


class TestHttpApi(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.session.headers = {}
        self.api = HttpApi("phc_key", host="https://flags.example.com/", personal_api_key="phx_key", session=self.session)

    def test_requires_api_key(self):
        with self.assertRaises(ValueError):
            HttpApi("", session=self.session)

    def test_user_agent(self):
        self.assertTrue(self.session.headers["User-Agent"].startswith("flagpost-python/"))

    def test_fetch_local_evaluation_flags(self):
        self.session.request.return_value = response(200, {"flags": [], "cohorts": {}})
        self.assertEqual(self.api.fetch_local_evaluation_flags(), {"flags": [], "cohorts": {}})
        self.session.request.assert_called_once_with(
            "GET",
            "https://flags.example.com/api/feature_flag/local_evaluation/",
            timeout=3.0,
            params={"token": "phc_key", "send_cohorts": ""},
            headers={"Authorization": "Bearer phx_key"},
        )

    def test_fetch_local_evaluation_flags_requires_personal_api_key(self):
        api = HttpApi("phc_key", session=self.session)
        with self.assertRaisesRegex(ApiError, "personal API key"):
            api.fetch_local_evaluation_flags()
        self.session.request.assert_not_called()

    def test_fetch_decide(self):
        self.session.request.return_value = response(200, {"featureFlags": {"a": "v"}, "featureFlagPayloads": {"a": "1"}, "errorsWhileComputingFlags": False})
        signup = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
        result = self.api.fetch_decide("u", {"signup": signup}, {"company": "acme"}, {"company": {"tags": ("a",)}}, timeout=0.5)
        self.assertEqual(result, {"featureFlags": {"a": "v"}, "featureFlagPayloads": {"a": "1"}})

        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://flags.example.com/decide/?v=3"))
        self.assertEqual(kwargs["timeout"], 0.5)
        self.assertEqual(kwargs["headers"], {"Content-Type": "application/json"})
        self.assertEqual(
            json.loads(kwargs["data"]),
            {
                "api_key": "phc_key",
                "distinct_id": "u",
                "person_properties": {"signup": "2024-01-02T03:04:05+00:00"},
                "groups": {"company": "acme"},
                "group_properties": {"company": {"tags": ["a"]}},
            },
        )

    def test_fetch_decide_missing_sections(self):
        self.session.request.return_value = response(200, {"featureFlags": None})
        self.assertEqual(self.api.fetch_decide("u", {}, {}, {}), {"featureFlags": {}, "featureFlagPayloads": {}})

    def test_send_batch(self):
        self.session.request.return_value = response(200, {"status": 1})
        self.api.send_batch([{"event": "e", "distinct_id": "u"}])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://flags.example.com/batch/"))
        self.assertEqual(kwargs["timeout"], 3.0)
        self.assertEqual(
            json.loads(kwargs["data"]),
            {"api_key": "phc_key", "historical_migrations": False, "batch": [{"event": "e", "distinct_id": "u"}]},
        )

    def test_errors(self):
        cases = [
            (response(401, {"detail": "invalid token"}), 401, "invalid token"),
            (response(500, raw=b"oops"), 500, "oops"),
            (response(502, ["not", "a", "dict"]), 502, "not"),
            (response(200, raw=b"<html>"), 200, "invalid JSON"),
            (response(200, [1, 2]), None, "not an object"),
            (response(204), None, "not an object"),
        ]
        for resp, status, message in cases:
            with self.subTest(status=resp.status_code, message=message):
                self.session.request.return_value = resp
                with self.assertRaisesRegex(ApiError, message) as cm:
                    self.api.fetch_decide("u", {}, {}, {})
                self.assertEqual(cm.exception.status, status)

    def test_transport_errors(self):
        for exc in [requests.ConnectionError("refused"), requests.Timeout("slow")]:
            with self.subTest(exc=exc):
                self.session.request.side_effect = exc
                with self.assertRaises(ApiError) as cm:
                    self.api.send_batch([])
                self.assertIsNone(cm.exception.status)
                self.assertIs(cm.exception.__cause__, exc)
