"""Example: live or replayed scoreboard state.

This script wires one provider into a :class:`ScoreboardStore` and logs
the interesting state transitions:

    Provider (line feed / XML feed / replay) → ScoreboardStore → listener

Logged transitions:

    1. Connection status changes and connection errors.
    2. Current competitor changes (and who is departing).
    3. Highlight activation after a finish is confirmed by results.

Prerequisites:
    1. Optionally create a ``.env`` file with:
       - ``SCOREBOARD_FEED_URL``: live feed target, e.g. ``192.168.1.5:8081``
       - ``SCOREBOARD_RECORDING``: path or URL of a JSONL recording
       - ``SCOREBOARD_SERVER_URL``: timing server REST base URL, enables
         best-run (BR1/BR2) merging of second-run results
    2. Install dependencies: ``pip install -e .``

Usage:
    python -m examples.example_scoreboard --mode replay --recording race.jsonl
    python -m examples.example_scoreboard --mode replay --speed 10 --loop
    python -m examples.example_scoreboard --mode line --url 192.168.1.5:8081
    python -m examples.example_scoreboard --mode xml --url 192.168.1.5:8082

Press Ctrl+C to stop.
"""

import argparse
import logging
import os
import time

from dotenv import load_dotenv

from core.correlator import ScoreboardState
from core.runs import RunMergeConfig, RunMerger
from core.scoreboard import ScoreboardStore
from infra.line_feed import LineFeedConfig, LineFeedProvider
from infra.provider import DataProvider
from infra.replay import ReplayConfig, ReplayProvider
from infra.xml_feed import XmlFeedConfig, XmlFeedProvider

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)


class TransitionLogger:
    """State listener that logs only the transitions worth seeing."""

    def __init__(self) -> None:
        self._last: ScoreboardState | None = None

    def __call__(self, state: ScoreboardState) -> None:
        last: ScoreboardState | None = self._last
        self._last = state

        if last is None or state.status != last.status:
            logger.info("Status: %s", state.status.value)
        if state.error and (last is None or state.error != last.error):
            logger.warning("Connection error: %s", state.error)

        current_bib: str | None = state.current.bib if state.current else None
        last_bib: str | None = last.current.bib if last and last.current else None
        if current_bib != last_bib:
            departing: str = state.departing.bib if state.departing else "-"
            logger.info("Current: %s (departing: %s)", current_bib or "-", departing)

        if state.highlight_bib and (last is None or state.highlight_bib != last.highlight_bib):
            row = next((r for r in state.results if r.bib == state.highlight_bib), None)
            logger.info(
                "Finish confirmed: bib %s rank %s total %s",
                state.highlight_bib,
                row.rank if row else "?",
                row.total if row else "?",
            )


def _build_provider(args: argparse.Namespace) -> DataProvider | None:
    if args.mode == "replay":
        if not args.recording:
            logger.error("No recording. Pass --recording or set SCOREBOARD_RECORDING.")
            return None
        return ReplayProvider(
            args.recording,
            ReplayConfig(speed=args.speed, loop=args.loop, sources=args.sources),
        )

    if not args.url:
        logger.error("No feed URL. Pass --url or set SCOREBOARD_FEED_URL.")
        return None
    if args.mode == "xml":
        return XmlFeedProvider(XmlFeedConfig(url=args.url))
    return LineFeedProvider(LineFeedConfig(url=args.url))


def main() -> None:
    """Run the scoreboard example."""
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Scoreboard state from a live feed or a recording",
    )
    parser.add_argument(
        "--mode",
        choices=("line", "xml", "replay"),
        default="replay",
        help="Data source (default: replay)",
    )
    parser.add_argument(
        "--url",
        type=str,
        default=os.environ.get("SCOREBOARD_FEED_URL", ""),
        help="Live feed URL or host:port (default: $SCOREBOARD_FEED_URL)",
    )
    parser.add_argument(
        "--recording",
        type=str,
        default=os.environ.get("SCOREBOARD_RECORDING", ""),
        help="Recording path or URL (default: $SCOREBOARD_RECORDING)",
    )
    parser.add_argument(
        "--speed",
        type=float,
        default=1.0,
        help="Replay speed multiplier (default: 1.0)",
    )
    parser.add_argument(
        "--sources",
        type=str,
        default="ws",
        help="Comma-separated recorded sources to replay (default: ws)",
    )
    parser.add_argument("--loop", action="store_true", help="Loop the recording")
    parser.add_argument(
        "--server-url",
        type=str,
        default=os.environ.get("SCOREBOARD_SERVER_URL", ""),
        help="Timing server URL for best-run merging (default: $SCOREBOARD_SERVER_URL)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after N seconds (default: run until Ctrl+C)",
    )
    args: argparse.Namespace = parser.parse_args()

    provider: DataProvider | None = _build_provider(args)
    if provider is None:
        return

    run_merger: RunMerger = RunMerger(RunMergeConfig(server_url=args.server_url))
    store: ScoreboardStore = ScoreboardStore(provider, run_merger=run_merger)
    store.subscribe(TransitionLogger())
    store.start()

    started: float = time.monotonic()
    try:
        while args.duration <= 0 or time.monotonic() - started < args.duration:
            time.sleep(1.0)
            state: ScoreboardState = store.state
            logger.debug(
                "on course=%d results=%d errors=%d",
                len(state.on_course),
                len(state.results),
                len(state.provider_errors),
            )
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        store.close()
        logger.info("Stopped")


if __name__ == "__main__":
    main()
