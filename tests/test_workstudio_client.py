import json
import unittest

import httpx

from vegsync.db import get_conn, migrate
from vegsync.providers.credentials import CredentialManager
from vegsync.providers.errors import (
    AuthenticationError,
    ConnectivityError,
    ExhaustedRetriesError,
    RemoteQueryError,
)
from vegsync.providers.workstudio import WorkStudioClient

BASE_URL = "https://ws.test/DDOProtocol"
DATASET = {"Protocol": "DATASET", "DataSet": {"Heading": ["SS_WO", "SS_EXT"], "Data": [["W1", "@"]]}}


def _db():
    conn = get_conn(":memory:")
    migrate(conn)
    return conn


class _Recorder:
    """MockTransport handler that replays a list of responses (or exceptions)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)


def _client(handler, conn=None, max_retries=3):
    conn = conn or _db()
    sleeps = []
    creds = CredentialManager(conn, service_username="svc", service_password="pw")
    client = WorkStudioClient(
        creds,
        base_url=BASE_URL,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        max_retries=max_retries,
        backoff_base=1.0,
        backoff_cap=30.0,
        sleep=sleeps.append,
    )
    return client, sleeps


class WorkStudioClientTests(unittest.TestCase):
    def test_execute_posts_getquery_with_db_parameters(self):
        handler = _Recorder((200, DATASET))
        client, _ = _client(handler)
        data = client.execute("SELECT 1")
        self.assertEqual(data, DATASET)
        request = handler.requests[0]
        self.assertEqual(request.url.path, "/DDOProtocol/GETQUERY")
        body = json.loads(request.content)
        self.assertEqual(body["Protocol"], "GETQUERY")
        self.assertEqual(body["DBParameters"], "USER NAME=svc\r\nPASSWORD=pw\r\n")
        self.assertEqual(body["SQL"], "SELECT 1")
        self.assertTrue(request.headers["authorization"].startswith("Basic "))

    def test_get_planned_units_uses_view_filter_and_transforms(self):
        handler = _Recorder((200, DATASET))
        client, _ = _client(handler)
        rows = client.get_planned_units("2025-1001")
        self.assertEqual(rows, [{"SS_WO": "W1", "SS_EXT": "@"}])
        body = json.loads(handler.requests[0].content)
        self.assertEqual(handler.requests[0].url.path, "/DDOProtocol/GETVIEWDATA")
        self.assertEqual(body["ResultFormat"], "DDOTable")
        self.assertEqual(body["ViewFilter"]["FilterName"], "WO#")
        self.assertEqual(body["ViewFilter"]["FilterValue"], "2025-1001")
        self.assertTrue(body["ViewFilter"]["PersistFilter"])
        self.assertEqual(body["ViewFilter"]["ClassName"], "TViewFilter")

    def test_get_circuits_by_status_filter(self):
        handler = _Recorder((200, DATASET))
        client, _ = _client(handler)
        client.get_circuits_by_status("QC")
        body = json.loads(handler.requests[0].content)
        self.assertEqual(body["ViewFilter"]["FilterName"], "By Job Status")
        self.assertEqual(body["ViewFilter"]["FilterValue"], "QC")

    def test_unexpected_view_protocol_is_returned(self):
        handler = _Recorder((200, {"Protocol": "SOMETHING"}))
        client, _ = _client(handler)
        self.assertEqual(client.get_view_data("{GUID}", {"FilterName": "x"}), {"Protocol": "SOMETHING"})

    def test_server_errors_are_retried_with_backoff(self):
        handler = _Recorder((503, {}), (500, {}), (200, DATASET))
        client, sleeps = _client(handler)
        self.assertEqual(client.execute("SELECT 1"), DATASET)
        self.assertEqual(len(handler.requests), 3)
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_rate_limit_is_retried(self):
        handler = _Recorder((429, {}), (200, DATASET))
        client, sleeps = _client(handler)
        self.assertEqual(client.execute("SELECT 1"), DATASET)
        self.assertEqual(sleeps, [1.0])

    def test_exhausted_retries_keep_last_error(self):
        handler = _Recorder((500, {}))
        client, sleeps = _client(handler, max_retries=3)
        with self.assertRaises(ExhaustedRetriesError) as ctx:
            client.execute("SELECT 1")
        self.assertEqual(len(handler.requests), 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertIsInstance(ctx.exception.__cause__, ConnectivityError)
        self.assertEqual(ctx.exception.attempts, 3)

    def test_transport_errors_are_retried(self):
        request = httpx.Request("POST", BASE_URL + "/GETQUERY")
        handler = _Recorder(httpx.ConnectError("refused", request=request), (200, DATASET))
        client, sleeps = _client(handler)
        self.assertEqual(client.execute("SELECT 1"), DATASET)
        self.assertEqual(len(handler.requests), 2)

    def test_backoff_is_capped(self):
        handler = _Recorder((500, {}))
        conn = _db()
        sleeps = []
        client = WorkStudioClient(
            CredentialManager(conn, service_username="svc", service_password="pw"),
            base_url=BASE_URL,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            max_retries=5,
            backoff_base=10.0,
            backoff_cap=30.0,
            sleep=sleeps.append,
        )
        with self.assertRaises(ExhaustedRetriesError):
            client.execute("SELECT 1")
        self.assertEqual(sleeps, [10.0, 20.0, 30.0, 30.0])

    def test_unauthorized_fails_fast_and_invalidates_user_credentials(self):
        conn = _db()
        creds = CredentialManager(conn, service_username="svc", service_password="pw")
        creds.store_credentials("u1", "planner1", "secret")
        handler = _Recorder((401, {}))
        client, sleeps = _client(handler, conn=conn)
        with self.assertRaises(AuthenticationError):
            client.execute("SELECT 1", user_id="u1")
        self.assertEqual(len(handler.requests), 1)
        self.assertEqual(sleeps, [])
        self.assertFalse(creds.has_valid_credentials("u1"))
        body = json.loads(handler.requests[0].content)
        self.assertIn("USER NAME=planner1", body["DBParameters"])

    def test_error_marker_raises_query_error_without_retry(self):
        handler = _Recorder((200, {"protocol": "ERROR", "errorMessage": "Invalid column name 'X'"}))
        client, sleeps = _client(handler)
        sql = "SELECT " + "X" * 600
        with self.assertRaises(RemoteQueryError) as ctx:
            client.execute(sql)
        self.assertEqual(len(handler.requests), 1)
        self.assertEqual(sleeps, [])
        self.assertEqual(ctx.exception.remote_message, "Invalid column name 'X'")
        self.assertEqual(len(ctx.exception.sql), 500)

    def test_other_client_errors_are_not_retried(self):
        handler = _Recorder((400, {"detail": "bad"}))
        client, _ = _client(handler)
        with self.assertRaises(RemoteQueryError) as ctx:
            client.execute("SELECT 1")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(len(handler.requests), 1)

    def test_success_marks_user_credentials_valid(self):
        conn = _db()
        creds = CredentialManager(conn, service_username="svc", service_password="pw")
        creds.store_credentials("u1", "planner1", "secret")
        handler = _Recorder((200, DATASET))
        client, _ = _client(handler, conn=conn)
        client.execute("SELECT 1", user_id="u1")
        row = conn.execute("SELECT validated_at_utc, fail_count FROM ws_credentials WHERE user_id='u1'").fetchone()
        self.assertIsNotNone(row[0])
        self.assertEqual(row[1], 0)

    def test_health_check_uses_root_url(self):
        handler = _Recorder((404, {}))
        client, _ = _client(handler)
        self.assertTrue(client.health_check())
        self.assertEqual(handler.requests[0].method, "GET")
        self.assertEqual(str(handler.requests[0].url).rstrip("/"), "https://ws.test")

    def test_health_check_unhealthy(self):
        client, _ = _client(_Recorder((503, {})))
        self.assertFalse(client.health_check())
        request = httpx.Request("GET", "https://ws.test")
        client, _ = _client(_Recorder(httpx.ConnectError("down", request=request)))
        self.assertFalse(client.health_check())


class CredentialManagerTests(unittest.TestCase):
    def test_service_account_fallback(self):
        creds = CredentialManager(_db(), service_username="svc", service_password="pw")
        self.assertEqual(
            creds.get_credentials(),
            {"username": "svc", "password": "pw", "user_id": None, "type": "service"},
        )
        self.assertEqual(creds.get_credentials("nobody")["type"], "service")

    def test_user_credentials_until_failed(self):
        creds = CredentialManager(_db(), service_username="svc", service_password="pw")
        creds.store_credentials(7, "planner7", "secret")
        self.assertEqual(creds.get_credentials(7)["username"], "planner7")
        creds.mark_failed(7)
        self.assertEqual(creds.get_credentials(7)["type"], "service")
        creds.store_credentials(7, "planner7", "new")
        self.assertTrue(creds.has_valid_credentials(7))

    def test_null_user_marks_are_noops(self):
        creds = CredentialManager(_db(), service_username="svc", service_password="pw")
        creds.mark_failed(None)
        creds.mark_success(None)
        self.assertFalse(creds.has_valid_credentials(None))


if __name__ == "__main__":
    unittest.main()
