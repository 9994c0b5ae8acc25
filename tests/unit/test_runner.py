"""tests/unit/test_runner.py: RowRunner failure policy and cancellation."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from cpbridge.core.exceptions import BridgeComputeError, BridgeConnectionError, RowError
from cpbridge.core.models import Row
from cpbridge.processing.runner import RowRunner


def rows(*keys):
    return [Row(k, {}) for k in keys]


def processor_failing_on(*bad_keys, error=None):
    p = MagicMock()

    def _process(row):
        if row.key in bad_keys:
            raise error or BridgeComputeError(f"cannot analyse {row.key}")
        return {"col": row.key}, f"result-{row.key}"

    p.process.side_effect = _process
    return p


class TestRowRunner:
    def test_all_rows_processed(self):
        runner = RowRunner(processor_failing_on())
        outcomes = list(runner.run(rows("a", "b", "c")))
        assert [o.row_key for o in outcomes] == ["a", "b", "c"]
        assert all(o.ok for o in outcomes)
        assert outcomes[1].result == "result-b"
        assert runner.processed == 3
        assert runner.failed == 0

    def test_fail_policy_raises_row_error(self):
        runner = RowRunner(processor_failing_on("b"), on_row_error="fail")
        seen = []
        with pytest.raises(RowError) as exc_info:
            for outcome in runner.run(rows("a", "b", "c")):
                seen.append(outcome.row_key)
        assert seen == ["a"]
        assert exc_info.value.row_key == "b"
        assert isinstance(exc_info.value.cause, BridgeComputeError)

    def test_skip_policy_continues(self):
        runner = RowRunner(processor_failing_on("b"), on_row_error="skip")
        outcomes = list(runner.run(rows("a", "b", "c")))
        assert [o.ok for o in outcomes] == [True, False, True]
        assert isinstance(outcomes[1].error, RowError)
        assert "cannot analyse b" in str(outcomes[1].error)
        assert runner.processed == 2
        assert runner.failed == 1
        assert runner.attempted == 3

    def test_lost_connection_always_fatal(self):
        runner = RowRunner(
            processor_failing_on("a", error=BridgeConnectionError("worker died")),
            on_row_error="skip",
        )
        with pytest.raises(RowError):
            list(runner.run(rows("a", "b")))

    def test_cancel_between_rows(self):
        cancel = threading.Event()
        runner = RowRunner(processor_failing_on(), cancel_event=cancel)
        seen = []
        for outcome in runner.run(rows("a", "b", "c")):
            seen.append(outcome.row_key)
            cancel.set()
        assert seen == ["a"]
        assert runner.cancelled

    def test_cancel_method(self):
        runner = RowRunner(processor_failing_on())
        runner.cancel()
        assert list(runner.run(rows("a"))) == []

    def test_bad_policy(self):
        with pytest.raises(ValueError):
            RowRunner(MagicMock(), on_row_error="retry")
