import asyncio
import json
import unittest
from datetime import date

import httpx

from fakes import FakeClock, make_settings
from hardcover_sync.clients.hardcover_client import (
    HardcoverClient,
    classify_graphql_errors,
    pick_best_read,
)
from hardcover_sync.clients import queries
from hardcover_sync.errors import (
    AuthFailedError,
    CircuitOpenError,
    GraphQLError,
    InvalidLinkError,
    NetworkError,
    RateLimitedError,
    ServerError,
)
from hardcover_sync.gate import FailureGate
from hardcover_sync.models import GateState, ReadingStatus, ReadSession
from hardcover_sync.throttle import RequestThrottle


def operation(request: httpx.Request):
    body = json.loads(request.content)
    return body["query"], body["variables"]


class ClientTestCase(unittest.IsolatedAsyncioTestCase):
    def build(self, handler, gate=None, **config):
        self.requests = []

        def recording(request):
            self.requests.append(request)
            return handler(request)

        self.gate = gate or FailureGate()
        self.client = HardcoverClient(
            config=make_settings(**config),
            gate=self.gate,
            throttle=RequestThrottle(60),
            transport=httpx.MockTransport(recording),
        )
        return self.client

    async def asyncTearDown(self):
        if hasattr(self, "client"):
            await self.client.aclose()


class TestRequest(ClientTestCase):
    async def test_bearer_token_and_user_lookup(self):
        client = self.build(lambda r: httpx.Response(200, json={
            "data": {"me": [{"id": 11, "account_privacy_setting_id": 2}]}}))

        me = await client.get_me()

        self.assertEqual(me["id"], 11)
        self.assertEqual(client.user_id, 11)
        self.assertEqual(client.privacy_setting_id, 2)
        request = self.requests[0]
        self.assertEqual(request.headers["authorization"], "Bearer test-token")
        self.assertEqual(str(request.url), "https://api.hardcover.app/v1/graphql")

    async def test_http_status_classification(self):
        cases = [(401, AuthFailedError), (403, AuthFailedError), (429, RateLimitedError),
                 (503, ServerError), (404, GraphQLError)]
        for status, error in cases:
            with self.subTest(status=status):
                client = self.build(lambda r, s=status: httpx.Response(s, text="nope"))
                with self.assertRaises(error):
                    await client.request(queries.PING_QUERY)
                await client.aclose()

    async def test_transport_error_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = self.build(handler)
        with self.assertRaises(NetworkError):
            await client.request(queries.PING_QUERY)
        self.assertEqual(self.gate.snapshot().consecutive_failures, 1)

    async def test_invalid_json_is_graphql_error(self):
        client = self.build(lambda r: httpx.Response(200, content=b"<html>"))
        with self.assertRaises(GraphQLError):
            await client.request(queries.PING_QUERY)

    async def test_graphql_errors_in_body(self):
        client = self.build(lambda r: httpx.Response(200, json={
            "errors": [{"message": "Malformed Authorization header", "extensions": {"code": "invalid-jwt"}}]}))
        with self.assertRaises(AuthFailedError):
            await client.request(queries.PING_QUERY)
        # Auth failures never count towards the gate
        self.assertEqual(self.gate.snapshot().consecutive_failures, 0)

    async def test_gate_opens_and_rejects_without_network(self):
        client = self.build(lambda r: httpx.Response(502))
        for _ in range(3):
            with self.assertRaises(ServerError):
                await client.request(queries.PING_QUERY)
        self.assertEqual(self.gate.snapshot().state, GateState.OPEN)

        with self.assertRaises(CircuitOpenError):
            await client.request(queries.PING_QUERY)
        self.assertEqual(len(self.requests), 3)

    async def test_missing_token_fails_without_network(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {}}), HARDCOVER_API_TOKEN="  ")
        with self.assertRaises(AuthFailedError):
            await client.request(queries.PING_QUERY)
        self.assertEqual(self.requests, [])

    async def test_test_connection(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"__typename": "query_root"}}))
        self.assertEqual(await client.test_connection(), (True, "Connection successful"))
        await client.aclose()

        client = self.build(lambda r: httpx.Response(401))
        self.assertEqual(await client.test_connection(), (False, "Invalid API token"))

    async def test_best_effort_request_survives_caller_cancellation(self):
        release = asyncio.Event()
        delivered = []

        async def handler(request):
            await release.wait()
            delivered.append(request)
            return httpx.Response(200, json={"data": {}})

        client = self.build(handler)
        task = asyncio.create_task(client.request(queries.PING_QUERY, best_effort=True))
        await asyncio.sleep(0.01)
        task.cancel()
        release.set()
        with self.assertRaises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)

        self.assertEqual(len(delivered), 1)

    async def test_non_object_bodies_are_graphql_errors(self):
        for content in (b"null", b"[]", b"42"):
            with self.subTest(content=content):
                client = self.build(lambda r, c=content: httpx.Response(200, content=c))
                with self.assertRaises(GraphQLError):
                    await client.request(queries.PING_QUERY)
                self.assertEqual(self.gate.snapshot().consecutive_failures, 1)
                await client.aclose()

    async def test_decoding_and_redirect_errors_are_network_errors(self):
        errors = [httpx.DecodingError, httpx.TooManyRedirects]
        for error in errors:
            with self.subTest(error=error.__name__):
                def handler(request, error=error):
                    raise error("broken response", request=request)

                client = self.build(handler)
                with self.assertRaises(NetworkError):
                    await client.request(queries.PING_QUERY)
                self.assertEqual(self.gate.snapshot().consecutive_failures, 1)
                await client.aclose()


class TestRecoveryRequest(ClientTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.responses = [httpx.Response(502) for _ in range(3)]

    def respond(self, request):
        return self.responses.pop(0)

    async def open_gate(self):
        client = self.build(self.respond, gate=FailureGate(clock=self.clock))
        for _ in range(3):
            with self.assertRaises(ServerError):
                await client.request(queries.PING_QUERY)
        self.assertEqual(self.gate.snapshot().state, GateState.OPEN)
        self.clock.advance(61)
        return client

    async def test_null_body_during_recovery_reopens_then_recovers(self):
        client = await self.open_gate()
        self.responses = [httpx.Response(200, content=b"null"), httpx.Response(200, json={"data": {}})]

        with self.assertRaises(GraphQLError):
            await client.request(queries.PING_QUERY)
        self.assertEqual(self.gate.snapshot().state, GateState.OPEN)

        self.clock.advance(61)
        self.assertEqual(await client.request(queries.PING_QUERY), {})
        self.assertEqual(self.gate.snapshot().state, GateState.CLOSED)
        self.assertTrue(self.gate.consume_recovery())

    async def test_cancelled_recovery_request_hands_its_slot_back(self):
        client = await self.open_gate()
        release = asyncio.Event()

        async def stalled(request):
            await release.wait()
            return httpx.Response(200, json={"data": {}})

        await client.client.aclose()
        client.client = httpx.AsyncClient(transport=httpx.MockTransport(stalled))
        task = asyncio.create_task(client.request(queries.PING_QUERY))
        await asyncio.sleep(0.01)
        self.assertEqual(self.gate.snapshot().state, GateState.HALF_OPEN)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        release.set()
        self.assertEqual(await client.request(queries.PING_QUERY), {})
        self.assertEqual(self.gate.snapshot().state, GateState.CLOSED)


class TestClassification(unittest.TestCase):
    def test_auth_markers(self):
        for message in ("401 Unauthorized", "Forbidden", "HTTP 403"):
            with self.subTest(message=message):
                self.assertIsInstance(classify_graphql_errors([{"message": message}]), AuthFailedError)
        error = classify_graphql_errors([{"message": "denied", "extensions": {"code": "access-denied"}}])
        self.assertIsInstance(error, AuthFailedError)

    def test_rate_limit_markers(self):
        self.assertIsInstance(classify_graphql_errors([{"message": "Rate limit exceeded"}]), RateLimitedError)
        self.assertIsInstance(classify_graphql_errors([{"message": "429 Too Many"}]), RateLimitedError)

    def test_everything_else(self):
        error = classify_graphql_errors([{"message": "field 'foo' not found"}])
        self.assertIsInstance(error, GraphQLError)
        self.assertEqual(str(error), "field 'foo' not found")

    def test_pick_best_read_prefers_progress_then_first(self):
        reads = [ReadSession(id=1, progress_pages=40), ReadSession(id=2, progress_pages=120),
                 ReadSession(id=3, progress_pages=120)]
        self.assertEqual(pick_best_read(reads).id, 2)
        self.assertEqual(pick_best_read([ReadSession(id=4), ReadSession(id=5)]).id, 4)


class TestOperations(ClientTestCase):
    async def test_search_parses_json_string_results(self):
        hits = {"hits": [
            {"document": {
                "id": "123",
                "title": "Dune",
                "isbns": ["9780441013593", "0441013597"],
                "contributions": [{"author": {"name": "Frank Herbert"}}],
                "image": {"url": "https://example.org/dune.jpg"},
            }},
            {"document": {"id": None, "title": "Broken"}},
            {"document": {"id": 7, "title": "Children of Dune", "author_names": ["Frank Herbert"]}},
        ]}
        client = self.build(lambda r: httpx.Response(200, json={
            "data": {"search": {"results": json.dumps(hits)}}}))

        books = await client.search_books("Dune", "Frank Herbert")

        self.assertEqual([b.id for b in books], [123, 7])
        self.assertEqual(books[0].isbn_13, "9780441013593")
        self.assertEqual(books[0].isbn_10, "0441013597")
        self.assertEqual(books[0].author_names, "Frank Herbert")
        self.assertEqual(books[0].image_url, "https://example.org/dune.jpg")
        self.assertEqual(books[1].author_names, "Frank Herbert")
        _, variables = operation(self.requests[0])
        self.assertEqual(variables["query"], "Dune Frank Herbert")

    async def test_get_user_book_picks_unfinished_read(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"user_books": [{
            "id": 42,
            "book_id": 9,
            "status_id": 2,
            "edition_id": None,
            "book": {"pages": 300},
            "edition": {"pages": 320},
            "user_book_reads": [
                {"id": 5, "progress_pages": 300, "started_at": "2023-01-01", "finished_at": "2023-02-01"},
                {"id": 6, "progress_pages": 40, "started_at": "2024-01-01", "finished_at": None,
                 "edition_id": 3},
            ],
        }]}}))

        user_book = await client.get_user_book(42)

        self.assertEqual(user_book.session_id, 6)
        self.assertEqual(user_book.started_at, "2024-01-01")
        self.assertEqual(user_book.edition_id, 3)
        self.assertEqual(user_book.remote_total_pages, 320)

    async def test_get_user_book_missing(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"user_books": []}}))
        self.assertIsNone(await client.get_user_book(42))

    async def test_create_read_defaults_start_date(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"insert_user_book_read": {
            "error": None,
            "user_book_read": {"id": 77, "progress_pages": 10, "started_at": date.today().isoformat()}}}}))

        read = await client.update_progress(42, 10)

        self.assertEqual(read.id, 77)
        query, variables = operation(self.requests[0])
        self.assertIn("CreateRead", query)
        self.assertEqual(variables["startedAt"], date.today().isoformat())
        self.assertNotIn("editionId", variables)

    async def test_update_falls_back_to_create_once(self):
        def handler(request):
            query, _ = operation(request)
            if "UpdateProgress" in query:
                return httpx.Response(200, json={"data": {"update_user_book_read": {
                    "error": "Read is finished", "user_book_read": None}}})
            return httpx.Response(200, json={"data": {"insert_user_book_read": {
                "error": None, "user_book_read": {"id": 78, "progress_pages": 15, "edition_id": 3}}}})

        client = self.build(handler)
        read = await client.update_progress(42, 15, session_id=6, edition_id=3, started_at="2024-01-01")

        self.assertEqual(read.id, 78)
        queries_sent = [operation(r)[0] for r in self.requests]
        self.assertEqual(len(queries_sent), 2)
        self.assertIn("UpdateProgress", queries_sent[0])
        self.assertIn("CreateRead", queries_sent[1])
        self.assertEqual(operation(self.requests[1])[1]["startedAt"], "2024-01-01")

    async def test_update_keeps_session_on_success(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"update_user_book_read": {
            "error": None, "user_book_read": {"id": 6, "progress_pages": 15}}}}))
        read = await client.update_progress(42, 15, session_id=6)
        self.assertEqual(read.id, 6)
        self.assertEqual(len(self.requests), 1)

    async def test_failed_fallback_marks_session_invalidated(self):
        def handler(request):
            query, _ = operation(request)
            if "UpdateProgress" in query:
                return httpx.Response(200, json={"data": {"update_user_book_read": {
                    "error": None, "user_book_read": {"id": 6, "progress_pages": None}}}})
            return httpx.Response(200, json={"data": {"insert_user_book_read": {
                "error": "Couldn't find UserBook with id 42", "user_book_read": None}}})

        client = self.build(handler)
        with self.assertRaises(InvalidLinkError) as ctx:
            await client.update_progress(42, 15, session_id=6)
        self.assertTrue(ctx.exception.session_invalidated)

    async def test_create_read_error_without_marker(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"insert_user_book_read": {
            "error": "something else", "user_book_read": None}}}))
        with self.assertRaises(GraphQLError) as ctx:
            await client.create_read(42, 10)
        self.assertNotIsInstance(ctx.exception, InvalidLinkError)

    async def test_add_book_to_library_uses_privacy_setting(self):
        def handler(request):
            query, _ = operation(request)
            if "CreateUserBook" in query:
                return httpx.Response(200, json={"data": {"insert_user_book": {
                    "error": None, "user_book": {"id": 99}}}})
            return httpx.Response(200, json={"data": {"me": [{"id": 11, "account_privacy_setting_id": 3}]}})

        client = self.build(handler)
        link_id = await client.add_book_to_library(123, ReadingStatus.CURRENTLY_READING)

        self.assertEqual(link_id, 99)
        _, variables = operation(self.requests[-1])
        self.assertEqual(variables["object"], {"book_id": 123, "status_id": 2, "privacy_setting_id": 3})

    async def test_update_status_tolerates_warning_errors(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"update_user_book": {
            "error": "warning", "user_book": {"id": 42, "status_id": 3}}}}))
        self.assertTrue(await client.update_status(42, ReadingStatus.READ))

    async def test_cleanup_keeps_highest_progress(self):
        deleted = []

        def handler(request):
            query, variables = operation(request)
            if "DeleteRead" in query:
                deleted.append(variables["readId"])
                return httpx.Response(200, json={"data": {"delete_user_book_read": {"id": variables["readId"]}}})
            return httpx.Response(200, json={"data": {"user_books": [{"user_book_reads": [
                {"id": 1, "progress_pages": 40},
                {"id": 2, "progress_pages": 120},
                {"id": 3, "progress_pages": 80},
            ]}]}})

        client = self.build(handler)
        result = await client.cleanup_duplicate_reads(42)

        self.assertEqual(result.deleted, 2)
        self.assertEqual(result.kept, 2)
        self.assertEqual(deleted, [1, 3])

    async def test_cleanup_single_read(self):
        client = self.build(lambda r: httpx.Response(200, json={"data": {"user_books": [
            {"user_book_reads": [{"id": 4, "progress_pages": 12}]}]}}))
        result = await client.cleanup_duplicate_reads(42)
        self.assertEqual((result.deleted, result.kept), (0, 4))


if __name__ == '__main__':
    unittest.main()
