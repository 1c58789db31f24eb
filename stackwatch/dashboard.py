"""Live terminal dashboard for a CloudFormation stack.

Polls the stack's resources in the background and redraws a sorted,
colour-coded status list with curses whenever new data arrives. Keyboard
input is read on its own thread; only the main thread draws.

Usage:
    stackwatch my-stack
    stackwatch my-stack -vv --sleep-time 5s --region eu-west-1
"""

from __future__ import annotations

import argparse
import curses
import logging
import logging.handlers
import queue
import sys
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from stackwatch.config import dump_default_config, load_config, parse_interval
from stackwatch.fetcher import StackResource, StatusCategory, StatusFetcher, make_client
from stackwatch.poller import PollLoop, Signal, SignalKind, StackGoneError
from stackwatch.store import ResourceStatuses

LOG = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────────

# Curses colour-pair IDs (0 is the terminal default)
C_DEFAULT = 0
C_OK = 1
C_PROGRESS = 2
C_FAILED = 3
C_TITLE = 4

KEY_CTRL_C = 3
KEY_CTRL_L = 12
KEY_ESCAPE = 27

INPUT_TIMEOUT_MS = 100
# Pause between idle reads so the drawing thread can take the screen lock
INPUT_IDLE_S = 0.01
FOOTER_HINT = "esc: quit  ^L: redraw"
TIMESTAMP_FORMAT = "%a, %d %b %Y %H:%M:%S %z"

_CATEGORY_COLORS: dict[StatusCategory, int] = {
    StatusCategory.SUCCESS: C_OK,
    StatusCategory.IN_PROGRESS: C_PROGRESS,
    StatusCategory.FAILURE: C_FAILED,
    StatusCategory.UNKNOWN: C_DEFAULT,
}


# ── Colour helpers ─────────────────────────────────────────────────────────


def _init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_OK, curses.COLOR_GREEN, -1)
    curses.init_pair(C_PROGRESS, curses.COLOR_BLUE, -1)
    curses.init_pair(C_FAILED, curses.COLOR_RED, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)


def category_color(category: StatusCategory) -> int:
    return _CATEGORY_COLORS.get(category, C_DEFAULT)


# ── Rendering ──────────────────────────────────────────────────────────────


def name_width(resources: Iterable[StackResource]) -> int:
    return max((len(r.identifier) for r in resources), default=0)


def format_resource(resource: StackResource, width: int) -> str:
    line = f"{resource.identifier:<{width}}: {resource.status}"
    if resource.reason:
        line += f" ({resource.reason})"
    return line


def render_lines(
    snapshot: Iterable[StackResource],
    now: datetime,
) -> list[tuple[str, StatusCategory | None]]:
    """Build the dashboard text for one snapshot.

    The first line is the timestamp header (category ``None``); the rest
    are the resources sorted by identifier, names padded to the longest
    one currently known.
    """
    resources = sorted(snapshot, key=lambda r: r.identifier)
    width = name_width(resources)
    lines: list[tuple[str, StatusCategory | None]] = [
        (now.strftime(TIMESTAMP_FORMAT), None)
    ]
    for r in resources:
        lines.append((format_resource(r, width), r.category))
    return lines


def _safe(win: curses.window, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


def draw(
    stdscr: curses.window,
    stack_name: str,
    snapshot: Sequence[StackResource],
    now: datetime,
) -> None:
    """Redraw the whole screen from a snapshot."""
    stdscr.erase()
    max_y, max_x = stdscr.getmaxyx()
    lines = render_lines(snapshot, now)

    # Column 0 of the header row is left to the key-input window.
    header, _ = lines[0]
    title_attr = curses.color_pair(C_TITLE) | curses.A_BOLD
    _safe(stdscr, 0, 1, header[: max(0, max_x - 2)], title_attr)
    label = f" {stack_name} "
    if len(header) + len(label) + 4 < max_x:
        _safe(stdscr, 0, max_x - len(label) - 1, label, curses.color_pair(C_TITLE))

    body_rows = max_y - 2
    for row, (text, category) in enumerate(lines[1:], start=1):
        if row > body_rows:
            break
        attr = curses.color_pair(category_color(category or StatusCategory.UNKNOWN))
        _safe(stdscr, row, 0, text[: max_x - 1], attr)

    if len(lines) - 1 < body_rows and len(FOOTER_HINT) < max_x - 1:
        _safe(stdscr, max_y - 1, 0, FOOTER_HINT, curses.A_DIM)

    stdscr.refresh()


# ── Keyboard input ─────────────────────────────────────────────────────────


def key_signal(key: int) -> SignalKind | None:
    """Map a key code to the control signal it triggers, if any."""
    if key in (KEY_ESCAPE, KEY_CTRL_C):
        return SignalKind.QUIT
    if key == KEY_CTRL_L:
        return SignalKind.REDRAW
    if key == curses.KEY_RESIZE:
        return SignalKind.RESIZE
    return None


class InputLoop(threading.Thread):
    """Reads keys from a dedicated window and posts control signals.

    Each read holds *screen_lock*, which the drawing thread also takes, so
    ncurses never runs on both threads at once (a resize is handled inside
    getch).
    """

    def __init__(
        self,
        window: curses.window,
        signals: queue.Queue[Signal],
        screen_lock: threading.Lock,
    ) -> None:
        super().__init__(name="stackwatch-input", daemon=True)
        self.window = window
        self.signals = signals
        self.screen_lock = screen_lock
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            with self.screen_lock:
                key = self.window.getch()
            if key == -1:
                self._stop_event.wait(INPUT_IDLE_S)
                continue
            kind = key_signal(key)
            if kind is None:
                continue
            self.signals.put(Signal(kind))
            if kind is SignalKind.QUIT:
                return


# ── Main loop ──────────────────────────────────────────────────────────────


def _input_window() -> curses.window:
    win = curses.newwin(1, 1, 0, 0)
    win.keypad(True)
    win.timeout(INPUT_TIMEOUT_MS)
    return win


def _dashboard_loop(
    stdscr: curses.window,
    stack_name: str,
    poller: PollLoop,
    signals: queue.Queue[Signal],
) -> None:
    """Coordinate poll and input signals and draw until quit.

    Raises:
        StackGoneError: Polling found the stack no longer exists.
    """
    _init_colors()
    try:
        curses.curs_set(0)
    except curses.error:
        pass
    curses.raw()
    curses.set_escdelay(25)

    screen_lock = threading.Lock()
    inputs = InputLoop(_input_window(), signals, screen_lock)
    inputs.start()
    poller.start()

    snapshot: tuple[StackResource, ...] = ()
    try:
        while True:
            signal = signals.get()
            LOG.debug("dashboard signal: %s", signal.kind.value)

            if signal.kind is SignalKind.QUIT:
                return
            if signal.kind is SignalKind.FATAL:
                if signal.error is not None:
                    raise signal.error
                raise RuntimeError(f"polling of stack {stack_name} stopped")
            if signal.kind is SignalKind.DATA:
                snapshot = signal.snapshot

            with screen_lock:
                if signal.kind is not SignalKind.DATA:
                    # Resize and ^L: force a full repaint on the next refresh
                    stdscr.clear()
                draw(stdscr, stack_name, snapshot, datetime.now().astimezone())
    finally:
        inputs.stop()
        poller.stop()
        inputs.join(timeout=1.0)


# ── CLI entry point ────────────────────────────────────────────────────────


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> Any:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _duration(value: str) -> float:
    try:
        return parse_interval(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def configure_logging(verbosity: int, log_file: Path | None = None) -> None:
    """Set the root log level from the number of -v flags."""
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        filename=str(log_file) if log_file else None,
    )
    if verbosity < 3:
        for name in ("boto3", "botocore", "urllib3"):
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def _held_stderr_logs() -> Iterator[None]:
    """Hold back console log output while the screen is up.

    Root handlers writing to a stream are swapped for a QueueHandler; the
    queued records are replayed through them on exit, after curses has
    given the terminal back. File handlers keep writing directly.
    """
    root = logging.getLogger()
    held = [
        h
        for h in root.handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]
    if not held:
        yield
        return

    records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    buffer = logging.handlers.QueueHandler(records)
    for h in held:
        root.removeHandler(h)
    root.addHandler(buffer)
    try:
        yield
    finally:
        root.removeHandler(buffer)
        for h in held:
            root.addHandler(h)
        while not records.empty():
            record = records.get_nowait()
            for h in held:
                if record.levelno >= h.level:
                    h.handle(record)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="stackwatch",
        description="Watch the resources of a CloudFormation stack change live.",
    )
    parser.add_argument(
        "stack_name",
        nargs="?",
        metavar="STACK_NAME",
        help="Name or id of the stack to watch",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="More logging (-v info, -vv debug)",
    )
    parser.add_argument(
        "-s",
        "--sleep-time",
        type=_duration,
        default=None,
        metavar="DURATION",
        help="Time between polls, e.g. 2s, 500ms, 1m (default: 2s, minimum 100ms)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file",
    )
    parser.add_argument("--region", default=None, help="AWS region")
    parser.add_argument("--profile", default=None, help="AWS named profile")
    parser.add_argument(
        "--endpoint-url",
        default=None,
        metavar="URL",
        help="Override the CloudFormation endpoint (e.g. a local emulator)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write logs here instead of stderr",
    )
    parser.add_argument(
        "--dump-config",
        action="store_true",
        help="Print the default configuration as TOML and exit",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.dump_config:
        print(dump_default_config(), end="")
        return
    if not args.stack_name or not args.stack_name.strip():
        parser.error("the following arguments are required: STACK_NAME")

    configure_logging(args.verbose, args.log_file)
    config = load_config(args.config)

    interval = args.sleep_time if args.sleep_time is not None else config["interval"]

    aws: dict[str, Any] = config["aws"]
    client = make_client(
        region=args.region or aws.get("region"),
        profile=args.profile or aws.get("profile"),
        endpoint_url=args.endpoint_url or aws.get("endpoint_url"),
    )

    signals: queue.Queue[Signal] = queue.Queue()
    poller = PollLoop(
        StatusFetcher(args.stack_name, client),
        ResourceStatuses(),
        signals,
        interval,
    )
    LOG.debug("watching stack %s every %.1fs", args.stack_name, interval)

    try:
        # The first render must have data, so fetch before taking the terminal.
        poller.wait_for_first()
        with _held_stderr_logs():
            curses.wrapper(_dashboard_loop, args.stack_name, poller, signals)
    except StackGoneError as e:
        print(f"stackwatch: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    except curses.error as e:
        print(f"stackwatch: cannot initialise terminal: {e}", file=sys.stderr)
        raise SystemExit(2) from e
    except KeyboardInterrupt:
        pass
    finally:
        poller.stop()


if __name__ == "__main__":
    main()
