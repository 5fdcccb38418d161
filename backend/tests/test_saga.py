import logging

import pytest

from storeledger.errors import CompensationFailed, InsufficientStock, InternalError
from storeledger.services.saga import Saga


def make_saga(**kwargs):
    kwargs.setdefault("backoff_base", 0)
    return Saga("test-saga", logger=logging.getLogger("test.saga"), **kwargs)


class TestSagaExecution:
    def test_runs_steps_in_order(self):
        calls = []
        saga = make_saga()
        saga.add_step("one", lambda: calls.append("one") or 1)
        saga.add_step("two", lambda: calls.append("two") or 2)

        assert saga.execute() == [1, 2]
        assert calls == ["one", "two"]

    def test_failure_compensates_completed_steps_in_reverse(self):
        calls = []

        def fail():
            raise InsufficientStock(store_id=1, product_id=3, available=0, requested=1)

        saga = make_saga()
        saga.add_step("one", lambda: calls.append("do one"), lambda: calls.append("undo one"))
        saga.add_step("two", lambda: calls.append("do two"), lambda: calls.append("undo two"))
        saga.add_step("three", fail, lambda: calls.append("undo three"))

        with pytest.raises(InsufficientStock):
            saga.execute()

        # The failed step is never compensated
        assert calls == ["do one", "do two", "undo two", "undo one"]

    def test_compensation_retried_until_it_succeeds(self):
        attempts = []

        def flaky_undo():
            attempts.append(1)
            if len(attempts) < 3:
                raise InternalError("store unavailable")

        saga = make_saga(compensation_attempts=3)
        saga.add_step("one", lambda: None, flaky_undo)
        saga.add_step("two", lambda: (_ for _ in ()).throw(ValueError("boom")))

        with pytest.raises(ValueError):
            saga.execute()
        assert len(attempts) == 3


class TestSagaCompensationFailure:
    def test_exhausted_compensation_raises_compensation_failed(self, caplog):
        original = InternalError("sale write failed")

        def undo():
            raise InternalError("still down")

        def persist():
            raise original

        saga = make_saga(compensation_attempts=2)
        saga.add_step("decrement", lambda: None, undo)
        saga.add_step("persist", persist)

        with caplog.at_level(logging.CRITICAL, logger="test.saga"):
            with pytest.raises(CompensationFailed) as exc_info:
                saga.execute()

        err = exc_info.value
        assert err.__cause__ is original
        assert err.details["saga"] == "test-saga"
        assert err.details["failures"][0]["step"] == "decrement"
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_other_compensations_still_run(self):
        calls = []

        def broken():
            raise InternalError("down")

        saga = make_saga(compensation_attempts=1)
        saga.add_step("one", lambda: None, lambda: calls.append("undo one"))
        saga.add_step("two", lambda: None, broken)
        saga.add_step("three", lambda: (_ for _ in ()).throw(RuntimeError("x")))

        with pytest.raises(CompensationFailed):
            saga.execute()
        assert calls == ["undo one"]
