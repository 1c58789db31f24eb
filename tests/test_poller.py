"""Tests for stackwatch.poller."""

from __future__ import annotations

import queue
import time
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from stackwatch.fetcher import FetchError, StackResource
from stackwatch.poller import (
    Classification,
    PollLoop,
    Signal,
    SignalKind,
    StackGoneError,
    classify_error,
)
from stackwatch.store import ResourceStatuses

STACK = "my-stack"


def _client_error(message: str, code: str = "ValidationError") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}}, "DescribeStackResources"
    )


def _fetch_error(cause: Exception) -> FetchError:
    return FetchError(STACK, cause)


GONE = _fetch_error(_client_error(f"Stack with id {STACK} does not exist"))
THROTTLED = _fetch_error(_client_error("Rate exceeded", "Throttling"))


def _poller(*results: Any, interval: float = 0.0) -> tuple[PollLoop, queue.Queue[Signal]]:
    fetcher = MagicMock()
    fetcher.stack_name = STACK
    fetcher.fetch.side_effect = list(results)
    signals: queue.Queue[Signal] = queue.Queue()
    return PollLoop(fetcher, ResourceStatuses(), signals, interval), signals


def _drain(signals: queue.Queue[Signal]) -> list[Signal]:
    out: list[Signal] = []
    while True:
        try:
            out.append(signals.get_nowait())
        except queue.Empty:
            return out


# ── classify_error ────────────────────────────────────────────────────────


class TestClassifyError:
    def test_stack_missing_is_fatal(self) -> None:
        assert classify_error(STACK, GONE) is Classification.FATAL

    def test_raw_client_error_is_fatal(self) -> None:
        err = _client_error(f"Stack with id {STACK} does not exist")
        assert classify_error(STACK, err) is Classification.FATAL

    @pytest.mark.parametrize(
        "message",
        [
            "Stack with id other-stack does not exist",
            f"Stack with id {STACK} does not exist.",
            f"stack with id {STACK} does not exist",
            f"Stack with id {STACK}  does not exist",
            f"Stack [{STACK}] does not exist",
            "Rate exceeded",
            "",
        ],
    )
    def test_other_service_errors_retryable(self, message: str) -> None:
        err = _fetch_error(_client_error(message))
        assert classify_error(STACK, err) is Classification.RETRYABLE

    def test_transport_error_retryable(self) -> None:
        err = _fetch_error(EndpointConnectionError(endpoint_url="https://x.invalid"))
        assert classify_error(STACK, err) is Classification.RETRYABLE

    def test_transport_error_with_matching_text_retryable(self) -> None:
        err = _fetch_error(RuntimeError(f"Stack with id {STACK} does not exist"))
        assert classify_error(STACK, err) is Classification.RETRYABLE

    def test_unrelated_exception_retryable(self) -> None:
        assert classify_error(STACK, ValueError("nope")) is Classification.RETRYABLE


# ── PollLoop.poll_once ────────────────────────────────────────────────────


class TestPollOnce:
    def test_success_merges_and_signals(self) -> None:
        poller, signals = _poller([StackResource("Resource", "CREATE_COMPLETE")])
        assert poller.poll_once() is True
        (signal,) = _drain(signals)
        assert signal.kind is SignalKind.DATA
        assert signal.snapshot == (StackResource("Resource", "CREATE_COMPLETE"),)
        assert poller.store.statuses() == {"Resource": "CREATE_COMPLETE"}

    def test_empty_fetch_still_signals(self) -> None:
        poller, signals = _poller([])
        assert poller.poll_once() is True
        (signal,) = _drain(signals)
        assert signal.snapshot == ()

    def test_retryable_error_keeps_state_and_is_silent(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        poller, signals = _poller([StackResource("A", "CREATE_IN_PROGRESS")], THROTTLED)
        poller.poll_once()
        _drain(signals)

        with caplog.at_level("WARNING", logger="stackwatch.poller"):
            assert poller.poll_once() is False
        assert _drain(signals) == []
        assert poller.store.statuses() == {"A": "CREATE_IN_PROGRESS"}
        assert "Rate exceeded" in caplog.text

    def test_fatal_error_raises(self) -> None:
        poller, signals = _poller(GONE)
        with pytest.raises(StackGoneError) as exc:
            poller.poll_once()
        assert exc.value.stack_name == STACK
        assert exc.value.cause is GONE
        assert _drain(signals) == []


# ── PollLoop.wait_for_first ───────────────────────────────────────────────


class TestWaitForFirst:
    def test_retries_until_success(self) -> None:
        poller, signals = _poller(THROTTLED, THROTTLED, [StackResource("A", "X")])
        assert poller.wait_for_first() is True
        assert poller.fetcher.fetch.call_count == 3
        assert [s.kind for s in _drain(signals)] == [SignalKind.DATA]

    def test_fatal_propagates(self) -> None:
        poller, _ = _poller(THROTTLED, GONE)
        with pytest.raises(StackGoneError):
            poller.wait_for_first()

    def test_stopped_returns_false(self) -> None:
        poller, _ = _poller()
        poller.stop()
        assert poller.wait_for_first() is False
        poller.fetcher.fetch.assert_not_called()


# ── PollLoop.run ──────────────────────────────────────────────────────────


class TestRun:
    def test_fatal_ends_loop_with_single_fatal_signal(self) -> None:
        poller, signals = _poller(
            [StackResource("A", "CREATE_IN_PROGRESS")],
            THROTTLED,
            GONE,
            [StackResource("A", "CREATE_COMPLETE")],
        )
        poller.run()

        kinds = [s.kind for s in _drain(signals)]
        assert kinds == [SignalKind.DATA, SignalKind.FATAL]
        assert poller.fetcher.fetch.call_count == 3

    def test_unexpected_error_logged_and_polling_continues(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        poller, signals = _poller(
            KeyError("StackResources"),
            [StackResource("A", "CREATE_COMPLETE")],
            GONE,
        )
        with caplog.at_level("ERROR", logger="stackwatch.poller"):
            poller.run()

        kinds = [s.kind for s in _drain(signals)]
        assert kinds == [SignalKind.DATA, SignalKind.FATAL]
        assert poller.fetcher.fetch.call_count == 3
        assert "unexpected error when polling stack my-stack" in caplog.text
        assert "KeyError" in caplog.text

    def test_fatal_signal_carries_error(self) -> None:
        poller, signals = _poller(GONE)
        poller.run()
        (signal,) = _drain(signals)
        assert isinstance(signal.error, StackGoneError)

    def test_stop_interrupts_sleep(self) -> None:
        poller, signals = _poller([], interval=60.0)
        poller.fetcher.fetch.side_effect = None
        poller.fetcher.fetch.return_value = []
        poller.start()
        signals.get(timeout=5)

        started = time.monotonic()
        poller.stop()
        poller.join(timeout=5)
        assert not poller.is_alive()
        assert time.monotonic() - started < 5

    def test_primed_loop_waits_before_next_fetch(self) -> None:
        poller, _ = _poller([StackResource("A", "X")], interval=60.0)
        poller.wait_for_first()
        poller.start()
        time.sleep(0.1)
        assert poller.fetcher.fetch.call_count == 1
        poller.stop()
        poller.join(timeout=5)
        assert not poller.is_alive()
