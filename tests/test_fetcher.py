import unittest

from extraction_engine.catalog import get_endpoint
from extraction_engine.deadline import Deadline
from extraction_engine.exceptions import ExtractionError, RemoteHTTPError
from extraction_engine.fetcher import PaginatedFetcher, extract_results, extract_total
from extraction_engine.models import EndpointDef

from fakes import BASE_URL, FakeClient, FakeClock, FakeResponse, make_records


class TestExtractHelpers(unittest.TestCase):
    def test_configured_key_then_fallbacks(self):
        self.assertEqual(extract_results({"items": [1], "results": [2]}, "items"), [1])
        self.assertEqual(extract_results({"results": [2], "data": [3]}, "items"), [2])
        self.assertEqual(extract_results({"data": [3]}, "items"), [3])
        self.assertIsNone(extract_results({"other": 1}, "items"))
        self.assertEqual(extract_results([{"a": 1}], "results"), [{"a": 1}])

    def test_total_reads_count_only_when_numeric(self):
        self.assertEqual(extract_total({"count": 250}), 250)
        self.assertIsNone(extract_total({"count": "250"}))
        self.assertIsNone(extract_total({"count": True}))
        self.assertIsNone(extract_total([1, 2]))


class TestPaginatedFetcher(unittest.TestCase):
    def setUp(self):
        self.client = FakeClient()
        self.fetcher = PaginatedFetcher(self.client, BASE_URL)
        self.orders = get_endpoint("eskolare", "orders")

    def test_stops_when_offset_reaches_total(self):
        self.client.collection("/orders/", make_records(250))
        pages = list(self.fetcher.iter_pages(self.orders))
        self.assertEqual([p.offset for p in pages], [0, 100, 200])
        self.assertEqual([len(p.records) for p in pages], [100, 100, 50])
        self.assertTrue(pages[-1].is_last)
        self.assertEqual(pages[-1].next_offset, 300)

    def test_short_page_does_not_end_sequence(self):
        self.client.collection("/orders/", make_records(250), page_cap=60)
        pages = list(self.fetcher.iter_pages(self.orders))
        self.assertEqual(self.client.offsets("/orders/"), [0, 100, 200])
        self.assertEqual(len(pages[0].records), 60)
        self.assertFalse(pages[0].is_last)

    def test_empty_page_ends_sequence_without_total(self):
        records = make_records(150)

        def handler(params):
            offset = int(params["offset"])
            return FakeResponse(200, {"results": records[offset:offset + 100]})

        self.client.route("/orders/", handler)
        pages = list(self.fetcher.iter_pages(self.orders))
        self.assertEqual([len(p.records) for p in pages], [100, 50, 0])
        self.assertTrue(pages[-1].is_last)
        self.assertIsNone(pages[-1].total)

    def test_resumes_from_start_offset(self):
        self.client.collection("/orders/", make_records(250))
        pages = list(self.fetcher.iter_pages(self.orders, start_offset=200))
        self.assertEqual(self.client.offsets("/orders/"), [200])
        self.assertEqual(pages[0].records[0]["id"], "r200")

    def test_non_list_value_is_single_record(self):
        self.client.route("/orders/", lambda params: FakeResponse(200, {"count": 1, "results": {"id": "only"}}))
        pages = list(self.fetcher.iter_pages(self.orders))
        self.assertEqual(len(pages), 1)
        self.assertEqual(pages[0].records, [{"id": "only"}])
        self.assertFalse(pages[0].is_list)
        self.assertTrue(pages[0].is_last)

    def test_declared_method_is_used(self):
        search = EndpointDef(slug="searches", name="Searches", path="/search/", method="POST")
        self.client.collection("/search/", make_records(3))
        self.client.collection("/orders/", make_records(3))
        list(self.fetcher.iter_pages(search))
        list(self.fetcher.iter_pages(self.orders))
        self.assertEqual(self.client.methods, ["POST", "GET"])

    def test_non_paginated_dashboard_body_is_the_record(self):
        dashboard = EndpointDef(slug="summaries", name="Summaries", path="/dashboard/", response_data_path="data", paginated=False)
        self.client.route("/dashboard/", lambda params: FakeResponse(200, {"revenue": 10, "orders": 3}))
        pages = list(self.fetcher.iter_pages(dashboard))
        self.assertEqual(pages[0].records, [{"revenue": 10, "orders": 3}])
        self.assertEqual(self.client.calls, [("/dashboard/", {})])

    def test_http_error_carries_status_and_truncated_body(self):
        self.client.route("/orders/", lambda params: FakeResponse(502, text="x" * 2000))
        with self.assertRaises(RemoteHTTPError) as ctx:
            list(self.fetcher.iter_pages(self.orders))
        self.assertEqual(ctx.exception.status, 502)
        self.assertEqual(len(ctx.exception.body), 500)
        self.assertFalse(ctx.exception.fatal)

    def test_unauthorized_is_fatal(self):
        self.client.route("/orders/", lambda params: FakeResponse(401, text="bad token"))
        with self.assertRaises(RemoteHTTPError) as ctx:
            list(self.fetcher.iter_pages(self.orders))
        self.assertTrue(ctx.exception.fatal)

    def test_invalid_json_raises_extraction_error(self):
        self.client.route("/orders/", lambda params: FakeResponse(200, None, text="<html>"))
        with self.assertRaises(ExtractionError):
            list(self.fetcher.iter_pages(self.orders))

    def test_expired_deadline_prevents_next_fetch(self):
        clock = FakeClock()
        self.client.clock = clock
        self.client.latency = 25
        self.client.collection("/orders/", make_records(500))
        deadline = Deadline(40, 50, clock=clock)
        pages = list(self.fetcher.iter_pages(self.orders, deadline=deadline))
        self.assertEqual(len(pages), 2)
        self.assertEqual(self.client.offsets("/orders/"), [0, 100])

    def test_fetch_one_formats_key(self):
        details = get_endpoint("eskolare", "order_details")
        self.client.route("/orders/abc/", lambda params: FakeResponse(200, {"uid": "abc", "status": "paid"}))
        self.assertEqual(self.fetcher.fetch_one(details, "abc")["status"], "paid")

    def test_access_check_reports_failure_without_raising(self):
        self.client.route("/orders/", lambda params: FakeResponse(403, text="forbidden"))
        ok, error = self.fetcher.check_access(self.orders)
        self.assertFalse(ok)
        self.assertIn("403", error)
        self.assertEqual(self.client.calls, [("/orders/", {"limit": 1})])


if __name__ == "__main__":
    unittest.main()
