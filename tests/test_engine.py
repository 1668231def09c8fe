import unittest

from extraction_engine.engine import ALL_COMPLETE_MESSAGE, LOCK_BUSY_MESSAGE, ExtractionEngine
from extraction_engine.exceptions import ConfigurationError, StoreWriteError
from extraction_engine.models import ExtractionProgress, SyncRequest
from extraction_engine.storage.memory_store import MemoryStore

from fakes import FakeClient, FakeClock, FakeResponse, fetcher_factory, make_records, make_settings, make_store

ORDERS = "eskolare_orders"


class SlowStore(MemoryStore):
    def __init__(self, clock, seconds_per_write):
        super().__init__()
        self.clock = clock
        self.seconds_per_write = seconds_per_write

    def upsert_records(self, table, connection_id, rows):
        super().upsert_records(table, connection_id, rows)
        self.clock.advance(self.seconds_per_write)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.client = FakeClient(clock=self.clock)
        self.store = make_store()
        self.settings = make_settings()

    def engine(self, store=None, settings=None):
        return ExtractionEngine(
            store or self.store,
            settings or self.settings,
            fetcher_factory=fetcher_factory(self.client),
            clock=self.clock,
            sleep=lambda s: None,
        )

    def run_entity(self, entity="orders", **kwargs):
        return self.engine().run(SyncRequest(connection_id="c1", entity=entity, **kwargs))


class TestEntitySync(EngineTestCase):
    def test_three_pages_for_250_records(self):
        self.client.collection("/orders/", make_records(250))
        response = self.run_entity()
        result = response.endpoints["orders"]

        self.assertTrue(response.success)
        self.assertEqual(self.client.offsets("/orders/"), [0, 100, 200])
        self.assertEqual(result.processed, 250)
        self.assertEqual(result.created, 250)
        self.assertEqual(result.final_offset, 300)
        self.assertTrue(result.is_complete)
        self.assertTrue(result.validation.ok)

        progress = self.store.get_progress("c1", "orders")
        self.assertEqual(progress.last_offset, 300)
        self.assertTrue(progress.is_complete)
        self.assertEqual(progress.total_records, 250)
        self.assertIsNotNone(progress.next_sync_at)
        self.assertGreater(progress.next_sync_at, progress.last_sync_at)
        self.assertTrue(self.client.closed)

    def test_rerun_converges_without_duplicates(self):
        self.client.collection("/orders/", make_records(250))
        self.run_entity()
        result = self.run_entity().endpoints["orders"]

        self.assertEqual(self.client.offsets("/orders/"), [0, 100, 200, 0, 100, 200])
        self.assertEqual(result.created, 0)
        self.assertEqual(result.updated, 250)
        self.assertEqual(self.store.count_records(ORDERS, "c1"), 250)

    def test_resumes_after_timeout_without_refetching(self):
        self.client.latency = 10
        self.client.collection("/orders/", make_records(1200))

        first = self.run_entity().endpoints["orders"]
        self.assertTrue(first.success)
        self.assertFalse(first.is_complete)
        self.assertEqual(first.final_offset, 400)
        self.assertEqual(first.message, "400/1200 processed, will continue")
        self.assertEqual(self.store.get_progress("c1", "orders").last_offset, 400)

        second = self.run_entity().endpoints["orders"]
        third = self.run_entity().endpoints["orders"]
        self.assertEqual(second.final_offset, 800)
        self.assertTrue(third.is_complete)
        self.assertEqual(third.final_offset, 1200)

        offsets = self.client.offsets("/orders/")
        self.assertEqual(offsets, list(range(0, 1200, 100)))
        self.assertEqual(self.store.count_records(ORDERS, "c1"), 1200)

        statuses = [log.status for log in self.store.logs("c1")]
        self.assertEqual(statuses, ["error", "error", "success"])
        self.assertEqual(self.store.logs("c1")[0].error_message, "400/1200 processed, will continue")

    def test_partially_drained_page_is_not_checkpointed(self):
        store = SlowStore(self.clock, seconds_per_write=2)
        store.add_connection(self.store.get_connection("c1"))
        self.client.latency = 45
        self.client.collection("/orders/", make_records(100))
        settings = make_settings(batch_size=10)

        result = self.engine(store, settings).run(SyncRequest(connection_id="c1", entity="orders")).endpoints["orders"]
        self.assertFalse(result.is_complete)
        self.assertEqual(result.processed, 30)
        self.assertEqual(result.final_offset, 0)
        self.assertEqual(store.get_progress("c1", "orders").last_offset, 0)

        self.client.latency = 0
        again = self.engine(store, settings).run(SyncRequest(connection_id="c1", entity="orders")).endpoints["orders"]
        self.assertTrue(again.is_complete)
        self.assertEqual((again.created, again.updated), (70, 30))

    def test_short_pages_follow_remote_total(self):
        self.client.collection("/orders/", make_records(250), page_cap=60)
        result = self.run_entity().endpoints["orders"]
        self.assertEqual(self.client.offsets("/orders/"), [0, 100, 200])
        self.assertTrue(result.is_complete)
        self.assertEqual(result.processed, 170)
        self.assertFalse(result.validation.ok)
        self.assertEqual(result.validation.local_count, 170)
        self.assertTrue(self.store.get_progress("c1", "orders").is_complete)

    def test_single_object_page_respects_reported_total(self):
        self.client.route("/orders/", lambda params: FakeResponse(200, {"count": 5, "results": {"id": "x"}}))
        result = self.run_entity().endpoints["orders"]
        progress = self.store.get_progress("c1", "orders")

        self.assertTrue(progress.is_complete)
        self.assertGreaterEqual(progress.last_offset, progress.total_records)
        self.assertEqual(result.final_offset, 5)
        self.assertEqual(self.store.records(ORDERS, "c1"), {"x": {"id": "x"}})

    def test_empty_page_before_total_completes_with_drift(self):
        records = make_records(150)

        def handler(params):
            offset = int(params["offset"])
            return FakeResponse(200, {"count": 300, "results": records[offset:offset + 100]})

        self.client.route("/orders/", handler)
        result = self.run_entity().endpoints["orders"]
        progress = self.store.get_progress("c1", "orders")

        self.assertTrue(result.is_complete)
        self.assertEqual(progress.last_offset, 300)
        self.assertEqual(progress.total_records, 300)
        self.assertFalse(result.validation.ok)

    def test_store_write_error_is_skipped(self):
        class FailingStore(MemoryStore):
            calls = 0

            def upsert_records(self, table, connection_id, rows):
                FailingStore.calls += 1
                if FailingStore.calls == 2:
                    raise StoreWriteError("deadlock detected")
                super().upsert_records(table, connection_id, rows)

        store = FailingStore()
        store.add_connection(self.store.get_connection("c1"))
        self.client.collection("/orders/", make_records(250))
        result = self.engine(store).run(SyncRequest(connection_id="c1", entity="orders")).endpoints["orders"]
        self.assertTrue(result.success)
        self.assertTrue(result.is_complete)
        self.assertEqual(result.skipped, 100)
        self.assertEqual(store.count_records(ORDERS, "c1"), 150)

    def test_complete_entity_starts_fresh_pass(self):
        self.client.collection("/orders/", make_records(250))
        self.run_entity()
        self.client.calls.clear()
        self.run_entity()
        self.assertEqual(self.client.offsets("/orders/")[0], 0)

    def test_force_reset_clears_checkpoint(self):
        self.client.latency = 10
        self.client.collection("/orders/", make_records(1200))
        self.run_entity()
        self.client.calls.clear()
        self.run_entity(force_reset=True)
        self.assertEqual(self.client.offsets("/orders/")[0], 0)

    def test_no_continue_starts_from_zero(self):
        self.client.latency = 10
        self.client.collection("/orders/", make_records(1200))
        self.run_entity()
        self.client.calls.clear()
        self.run_entity(continue_from_checkpoint=False)
        self.assertEqual(self.client.offsets("/orders/")[0], 0)


class TestErrors(EngineTestCase):
    def test_fatal_http_error_marks_connection(self):
        self.client.route("/orders/", lambda params: FakeResponse(401, text="invalid token"))
        response = self.run_entity()
        result = response.endpoints["orders"]

        self.assertFalse(response.success)
        self.assertFalse(result.success)
        self.assertIn("401", result.error)
        self.assertEqual(self.store.get_connection("c1").status, "error")
        self.assertEqual(self.store.logs("c1")[0].status, "error")
        self.assertIsNone(self.store.get_progress("c1", "orders"))

    def test_transient_error_keeps_earlier_checkpoint(self):
        records = make_records(300)

        def handler(params):
            offset = int(params["offset"])
            if offset == 200:
                return FakeResponse(503, text="upstream unavailable")
            return FakeResponse(200, {"count": 300, "results": records[offset:offset + 100]})

        self.client.route("/orders/", handler)
        result = self.run_entity().endpoints["orders"]
        self.assertFalse(result.success)
        self.assertEqual(self.store.get_progress("c1", "orders").last_offset, 200)
        self.assertEqual(self.store.get_connection("c1").status, "active")

    def test_unknown_connection(self):
        with self.assertRaises(ConfigurationError):
            self.engine().run(SyncRequest(connection_id="missing"))

    def test_missing_token(self):
        store = make_store(token=None)
        with self.assertRaises(ConfigurationError):
            self.engine(store).run(SyncRequest(connection_id="c1"))
        self.assertEqual(store.logs(), [])

    def test_paused_connection(self):
        store = make_store(status="paused")
        with self.assertRaises(ConfigurationError):
            self.engine(store).run(SyncRequest(connection_id="c1", entity="orders"))

    def test_unknown_entity(self):
        with self.assertRaises(ConfigurationError):
            self.run_entity(entity="invoices")
        self.assertEqual(self.client.calls, [])

    def test_busy_lock_is_skipped(self):
        self.client.collection("/orders/", make_records(10))
        self.store.try_lock("c1", "orders")
        response = self.run_entity()
        result = response.endpoints["orders"]
        self.assertTrue(result.success)
        self.assertFalse(result.is_complete)
        self.assertEqual(result.message, LOCK_BUSY_MESSAGE)
        self.assertEqual(self.client.calls, [])

    def test_force_reset_leaves_locked_checkpoint_alone(self):
        self.store.save_progress(ExtractionProgress(connection_id="c1", endpoint="orders", last_offset=500, total_records=1200))
        self.store.try_lock("c1", "orders")
        result = self.run_entity(force_reset=True).endpoints["orders"]
        self.assertEqual(result.message, LOCK_BUSY_MESSAGE)
        self.assertEqual(self.store.get_progress("c1", "orders").last_offset, 500)


class TestConnectionCheck(EngineTestCase):
    def test_connection_check_success(self):
        self.client.collection("/orders/", make_records(3))
        response = self.engine().run(SyncRequest(connection_id="c1", test_only=True))
        conn = self.store.get_connection("c1")
        self.assertTrue(response.success)
        self.assertEqual(response.test_result["endpoint"], "orders")
        self.assertEqual(self.client.calls, [("/orders/", {"limit": 1})])
        self.assertTrue(conn.last_test_success)
        self.assertIsNotNone(conn.last_test_at)
        self.assertEqual(self.store.logs(), [])

    def test_connection_check_failure_sets_error_status(self):
        self.client.route("/orders/", lambda params: FakeResponse(403, text="forbidden"))
        response = self.engine().run(SyncRequest(connection_id="c1", test_only=True))
        self.assertFalse(response.success)
        self.assertIn("403", response.test_result["error"])
        self.assertEqual(self.store.get_connection("c1").status, "error")


class TestChaining(EngineTestCase):
    def register_all(self, size=5):
        for path in (
            "/institutions/partnerships/",
            "/institutions/grades/",
            "/catalog/categories/",
            "/institutions/showcases/",
            "/financial/withdrawals/",
            "/cancellations/",
            "/orders/",
            "/payments/",
            "/financial/transactions/",
        ):
            self.client.collection(path, make_records(size, prefix=path.strip("/").replace("/", "-")))

    def test_runs_entities_in_priority_order(self):
        self.register_all()
        response = self.engine().run(SyncRequest(connection_id="c1"))
        self.assertEqual(
            list(response.endpoints),
            [
                "partnerships",
                "grades",
                "categories",
                "showcases",
                "withdrawals",
                "cancellations",
                "orders",
                "order_details",
                "payments",
                "transactions",
            ],
        )
        self.assertTrue(response.all_complete)
        self.assertEqual(response.message, ALL_COMPLETE_MESSAGE)

    def test_nothing_pending(self):
        self.register_all()
        self.engine().run(SyncRequest(connection_id="c1"))
        self.client.calls.clear()
        response = self.engine().run(SyncRequest(connection_id="c1"))
        self.assertEqual(response.endpoints, {})
        self.assertTrue(response.all_complete)
        self.assertEqual(self.client.calls, [])

    def test_named_entity_reports_all_complete(self):
        self.register_all()
        self.engine().run(SyncRequest(connection_id="c1"))
        response = self.run_entity("grades")
        self.assertTrue(response.endpoints["grades"].is_complete)
        self.assertTrue(response.all_complete)
        self.assertEqual(response.message, ALL_COMPLETE_MESSAGE)

    def test_named_entity_with_others_pending(self):
        self.register_all()
        response = self.run_entity("grades")
        self.assertTrue(response.endpoints["grades"].is_complete)
        self.assertFalse(response.all_complete)
        self.assertIsNone(response.message)

    def test_stops_chaining_when_budget_is_spent(self):
        self.register_all(size=500)
        self.client.latency = 15
        response = self.engine().run(SyncRequest(connection_id="c1"))
        self.assertEqual(list(response.endpoints), ["partnerships"])
        self.assertFalse(response.endpoints["partnerships"].is_complete)
        self.assertFalse(response.all_complete)


if __name__ == "__main__":
    unittest.main()
