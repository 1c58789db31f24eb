"""Background polling of the stack and fatal/retryable error handling.

The poll thread fetches, merges into the shared store and hands the
dashboard an immutable snapshot through the signal queue. A failed fetch
is either retried on the next cycle or, when the stack no longer exists,
ends polling with a FATAL signal.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum

from botocore.exceptions import ClientError

from stackwatch.fetcher import FetchError, StackResource, StatusFetcher
from stackwatch.store import ResourceStatuses

LOG = logging.getLogger(__name__)


# ── Error classification ───────────────────────────────────────────────────


class Classification(Enum):
    FATAL = "fatal"
    RETRYABLE = "retryable"


def _service_message(err: BaseException) -> str | None:
    if isinstance(err, FetchError):
        return err.message if err.is_service_error else None
    if isinstance(err, ClientError):
        return err.response.get("Error", {}).get("Message", "")
    return None


def classify_error(stack_name: str, err: BaseException) -> Classification:
    """Decide whether a fetch failure should stop polling.

    Only a service error saying the stack does not exist is fatal;
    throttling, network and any other service errors are retried.
    """
    message = _service_message(err)
    if message is not None and message == f"Stack with id {stack_name} does not exist":
        return Classification.FATAL
    return Classification.RETRYABLE


class StackGoneError(Exception):
    """Polling stopped because the stack does not exist."""

    def __init__(self, stack_name: str, cause: BaseException) -> None:
        self.stack_name = stack_name
        self.cause = cause
        super().__init__(f"stack {stack_name} does not exist")


# ── Signals ────────────────────────────────────────────────────────────────


class SignalKind(Enum):
    DATA = "data"
    FATAL = "fatal"
    QUIT = "quit"
    REDRAW = "redraw"
    RESIZE = "resize"


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    snapshot: tuple[StackResource, ...] = ()
    error: BaseException | None = None


# ── Poll loop ──────────────────────────────────────────────────────────────


class PollLoop(threading.Thread):
    """Fetch, merge and signal every *interval* seconds until stopped."""

    def __init__(
        self,
        fetcher: StatusFetcher,
        store: ResourceStatuses,
        signals: queue.Queue[Signal],
        interval: float,
    ) -> None:
        super().__init__(name="stackwatch-poll", daemon=True)
        self.fetcher = fetcher
        self.store = store
        self.signals = signals
        self.interval = interval
        self._stop_event = threading.Event()
        self._primed = False

    @property
    def stack_name(self) -> str:
        return self.fetcher.stack_name

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def poll_once(self) -> bool:
        """Run one poll cycle. Returns True if new data was signalled.

        Raises:
            StackGoneError: The stack does not exist any more.
        """
        try:
            resources = self.fetcher.fetch()
        except FetchError as e:
            if classify_error(self.stack_name, e) is Classification.FATAL:
                raise StackGoneError(self.stack_name, e) from e
            LOG.warning("error when polling stack resources: %s", e)
            return False

        self.store.merge(resources)
        self.signals.put(Signal(SignalKind.DATA, snapshot=self.store.snapshot()))
        return True

    def wait_for_first(self) -> bool:
        """Block until the first successful fetch.

        Returns False if the loop was stopped before any data arrived.
        """
        while not self.stopped:
            if self.poll_once():
                self._primed = True
                return True
            self._stop_event.wait(self.interval)
        return False

    def run(self) -> None:
        if self._primed:
            self._stop_event.wait(self.interval)
        while not self.stopped:
            try:
                self.poll_once()
            except StackGoneError as e:
                LOG.error("a fatal error occurred: %s", e.cause)
                self.signals.put(Signal(SignalKind.FATAL, error=e))
                return
            except Exception:
                # Anything unclassified is retried like a transient fetch error
                LOG.exception("unexpected error when polling stack %s", self.stack_name)
            self._stop_event.wait(self.interval)
        LOG.debug("poll loop for %s stopped", self.stack_name)
