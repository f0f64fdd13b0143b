import threading

from checkout_service.dispatcher import SideEffectDispatcher


class TestSideEffectDispatcher:
    def test_dispatch_returns_before_task_finishes(self, dispatcher):
        release = threading.Event()
        done = []

        def slow():
            release.wait(timeout=5)
            done.append(True)

        dispatcher.dispatch("slow", slow, order_id="ORD-1")
        assert done == []

        release.set()
        assert dispatcher.wait(timeout=5)
        assert done == [True]

    def test_failure_is_logged_not_raised(self, dispatcher, caplog):
        def boom():
            raise RuntimeError("smtp down")

        future = dispatcher.dispatch("confirmation_email", boom, order_id="ORD-1")
        dispatcher.wait(timeout=5)

        assert future.exception() is None
        assert dispatcher.failures == ["confirmation_email"]
        assert "[Order: ORD-1] Task 'confirmation_email' failed" in caplog.text

    def test_critical_failure_logged_at_critical(self, dispatcher, caplog):
        def boom():
            raise RuntimeError("broker down")

        dispatcher.dispatch("shipment", boom, order_id="ORD-1", critical=True)
        dispatcher.wait(timeout=5)

        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_one_failure_does_not_stop_siblings(self, dispatcher):
        ran = []

        def boom():
            raise ValueError("bad payload")

        dispatcher.dispatch("first", boom)
        dispatcher.dispatch("second", ran.append, "second")
        dispatcher.wait(timeout=5)

        assert ran == ["second"]

    def test_wait_with_nothing_pending(self):
        dispatcher = SideEffectDispatcher(max_workers=1)
        try:
            assert dispatcher.wait(timeout=1) is True
        finally:
            dispatcher.shutdown()
