"""Best-run (BR1/BR2) results merging.

In a best-run event every competitor paddles twice and ranks on the
better run. Race ids encode the run: ``K1M_ST_BR1_6`` is the first run,
``K1M_ST_BR2_6`` the second. During the second run the live results
feed is misleading in two ways:

    - ``total`` is the better of both runs, not the second-run total.
    - ``penalty`` belongs to whichever run is better, so it is wrong for
      the second run whenever the first run was faster.

:class:`RunMerger` repairs second-run results before they reach the
correlator. It combines three sources, most accurate first for the
second-run penalty:

    1. Live on-course penalties. They are kept for
       ``penalty_grace_ms`` after the competitor leaves the course so a
       just-finished run does not fall back to a stale value.
    2. Merged results from the timing server's REST API (both runs per
       competitor), refetched ``debounce_ms`` after each results
       snapshot.
    3. The feed's own ``penalty``.

The second-run total is recomputed as ``time + penalty``; an invalid
status (DNS/DNF/DSQ) from the REST API always wins.

Example:
    >>> merger = RunMerger(RunMergeConfig(server_url="http://192.168.1.50:27123"))
    >>> results = merger.process(results)          # on every results snapshot
    >>> merger.update_on_course(data.competitors)  # on every on-course snapshot
"""

import logging
import re
import threading
from typing import Any, Callable
from urllib.parse import quote

import requests
from pydantic import BaseModel, ConfigDict, Field

from core.callbacks import CallbackRegistry, Unsubscribe
from core.errors import (
    FeedConnectionError,
    FeedError,
    MessageParseError,
    MessageValidationError,
)
from core.events import Competitor, ResultRow, ResultsData, RunResult
from core.gates import parse_gates, total_penalty
from core.parsing import safe_int, safe_string
from core.timers import Clock, TimerFactory, TimerHandle, monotonic_ms, threading_timer

logger: logging.Logger = logging.getLogger(__name__)

INVALID_STATUSES: frozenset[str] = frozenset(("DNS", "DNF", "DSQ"))

_CLASS_ID: re.Pattern[str] = re.compile(r"^(.+)_BR[12]_")

_UPDATED_CHANNEL: str = "runs_updated"


# ---------------------------------------------------------------------------
# Race ids
# ---------------------------------------------------------------------------


def is_first_run(race_id: str) -> bool:
    return "_BR1_" in race_id


def is_second_run(race_id: str) -> bool:
    return "_BR2_" in race_id


def class_id(race_id: str) -> str:
    """Boat class and course shared by both runs (``"K1M_ST"``).

    Returns ``race_id`` unchanged when it is not a best-run id.
    """
    match: re.Match[str] | None = _CLASS_ID.match(race_id)
    return match.group(1) if match else race_id


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class CachedRuns(BaseModel):
    """Both runs of one competitor as reported by the REST API."""

    model_config = ConfigDict(frozen=True)

    run1: RunResult
    run2: RunResult | None = None


class RunMergeConfig(BaseModel):
    """Configuration for :class:`RunMerger`.

    Attributes:
        server_url: Timing server base URL. Empty disables REST fetches;
            only live on-course penalties are merged then.
        debounce_ms: Delay between a results snapshot and the fetch it
            triggers. Later snapshots restart the delay.
        penalty_grace_ms: How long a live penalty is kept after the
            competitor left the on-course list.
        timeout_s: HTTP request timeout.
    """

    model_config = ConfigDict(frozen=True)

    server_url: str = Field(default="", description="Timing server base URL")
    debounce_ms: int = Field(default=1000, ge=0)
    penalty_grace_ms: int = Field(default=10_000, ge=0)
    timeout_s: float = Field(default=5.0, gt=0)


# ---------------------------------------------------------------------------
# REST API
# ---------------------------------------------------------------------------


def _format_seconds(total_ms: int) -> str:
    return f"{total_ms / 1000:.2f}"


def parse_run(raw: Any) -> RunResult | None:
    """Convert one REST run object (times in milliseconds).

    Returns ``None`` when the run has neither a valid time nor an
    invalid status, i.e. the competitor has not run it yet.
    """
    if not isinstance(raw, dict) or not raw:
        return None
    status: str = safe_string(raw.get("status"))
    penalty: int = max(0, safe_int(raw.get("pen")))
    rank: int = max(0, safe_int(raw.get("rank")))
    if status in INVALID_STATUSES:
        return RunResult(penalty=penalty, rank=rank, status=status)
    total_ms: int = safe_int(raw.get("total"))
    if total_ms > 0:
        return RunResult(total=_format_seconds(total_ms), penalty=penalty, rank=rank)
    return None


def parse_merged_results(payload: Any) -> dict[str, CachedRuns]:
    """Build the per-bib run cache from a merged results response.

    Competitors without a first run are left out.

    Raises:
        MessageValidationError: ``payload`` has no ``results`` list.
    """
    rows: Any = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise MessageValidationError("Merged results response has no results list")

    cache: dict[str, CachedRuns] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        bib: str = safe_string(row.get("bib")).strip()
        run1: RunResult | None = parse_run(row.get("run1"))
        if bib and run1 is not None:
            cache[bib] = CachedRuns(run1=run1, run2=parse_run(row.get("run2")))
    return cache


def fetch_merged_results(
    server_url: str,
    race_id: str,
    timeout_s: float = 5.0,
) -> dict[str, CachedRuns]:
    """Fetch both runs for ``race_id`` from the timing server.

    Raises:
        FeedConnectionError: Request failed or returned an error status.
        MessageParseError: Response body is not JSON.
        MessageValidationError: Response has no results list.
    """
    url: str = (
        f"{server_url.rstrip('/')}/api/xml/races/{quote(race_id, safe='')}/results"
    )
    try:
        response: requests.Response = requests.get(
            url, params={"merged": "true"}, timeout=timeout_s
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedConnectionError(
            f"Failed to fetch merged results: {exc}",
            cause=exc,
        ) from exc

    try:
        payload: Any = response.json()
    except ValueError as exc:
        raise MessageParseError(
            f"Merged results are not JSON: {exc}",
            cause=exc,
        ) from exc
    return parse_merged_results(payload)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def live_penalty(competitor: Competitor) -> int:
    """Penalty of a competitor on course.

    Gate penalties are summed when the feed has not updated ``penalty``
    yet.
    """
    if competitor.penalty:
        return competitor.penalty
    return total_penalty(parse_gates(competitor.gates))


def second_run_total(time: str, penalty: int) -> str:
    """``time + penalty`` formatted like the feed; ``""`` if ``time`` is invalid."""
    if not time or time == "0":
        return ""
    try:
        seconds: float = float(time)
    except ValueError:
        return ""
    return f"{seconds + penalty:.2f}"


def _total_ms(total: str) -> int | None:
    if not total:
        return None
    try:
        return round(float(total) * 1000)
    except ValueError:
        return None


def best_run(run1: RunResult, run2: RunResult | None) -> int | None:
    """1 or 2 for the faster valid run (ties go to the first run)."""
    first: int | None = _total_ms(run1.total)
    second: int | None = _total_ms(run2.total) if run2 is not None else None
    if first is None and second is None:
        return None
    if second is None:
        return 1
    if first is None:
        return 2
    return 1 if first <= second else 2


def _merge_row(
    row: ResultRow,
    cached: CachedRuns | None,
    live_pen: int | None,
) -> ResultRow:
    has_time: bool = row.time not in ("", "0")

    if cached is None:
        if not has_time:
            return row
        pen: int = live_pen if live_pen is not None else row.penalty
        run2: RunResult | None = RunResult(
            total=second_run_total(row.time, pen), penalty=pen, rank=row.rank
        )
        return row.model_copy(update={"run2": run2})

    cached_run2: RunResult | None = cached.run2
    if cached_run2 is not None and cached_run2.status in INVALID_STATUSES:
        run2 = cached_run2
    elif has_time:
        if live_pen is not None:
            pen = live_pen
        elif cached_run2 is not None:
            pen = cached_run2.penalty
        else:
            pen = row.penalty
        run2 = RunResult(total=second_run_total(row.time, pen), penalty=pen, rank=row.rank)
    else:
        run2 = cached_run2

    return row.model_copy(
        update={"run1": cached.run1, "run2": run2, "best_run": best_run(cached.run1, run2)}
    )


def merge_runs(
    rows: tuple[ResultRow, ...],
    cache: dict[str, CachedRuns],
    penalties: dict[str, int] | None = None,
) -> tuple[ResultRow, ...]:
    """Attach ``run1``/``run2``/``best_run`` to second-run result rows.

    Args:
        rows: Rows from the live results feed.
        cache: Runs from the REST API, keyed by bib.
        penalties: Live on-course penalties, keyed by bib.

    Returns:
        ``rows`` itself when there is nothing to merge, otherwise new rows
        in the same order.
    """
    penalties = penalties or {}
    if not cache and not penalties:
        return rows
    return tuple(_merge_row(row, cache.get(row.bib), penalties.get(row.bib)) for row in rows)


# ---------------------------------------------------------------------------
# Merger
# ---------------------------------------------------------------------------


class RunMerger:
    """Keeps the run cache and live penalties for the current race.

    Thread model:
        ``process`` and ``update_on_course`` are called from provider
        callbacks; fetches run on a timer thread. Internal state is
        guarded by one lock that is never held while calling out
        (fetch function or listeners).

    Args:
        config: Merge settings.
        fetch: ``race_id -> cache`` function. Defaults to
            :func:`fetch_merged_results` against ``config.server_url``,
            or no fetching when the URL is empty.
        clock: Millisecond clock for the penalty grace period.
        timer_factory: One-shot timer for debounced fetches.
    """

    def __init__(
        self,
        config: RunMergeConfig | None = None,
        fetch: Callable[[str], dict[str, CachedRuns]] | None = None,
        clock: Clock | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self._config: RunMergeConfig = config or RunMergeConfig()
        if fetch is None and self._config.server_url:
            fetch = self._fetch_from_server
        self._fetch: Callable[[str], dict[str, CachedRuns]] | None = fetch
        self._clock: Clock = clock or monotonic_ms
        self._timer_factory: TimerFactory = timer_factory or threading_timer
        self._listeners: CallbackRegistry = CallbackRegistry()
        self._lock: threading.Lock = threading.Lock()

        self._race_id: str = ""
        self._cache: dict[str, CachedRuns] = {}
        # bib -> (penalty, last seen)
        self._penalties: dict[str, tuple[int, float]] = {}

        self._fetch_timer: TimerHandle | None = None
        self._fetch_generation: int = 0

        # Counters (guarded by _lock)
        self._fetches: int = 0
        self._fetch_errors: int = 0

    @property
    def race_id(self) -> str:
        with self._lock:
            return self._race_id

    def on_runs_updated(self, callback: Callable[[str], None]) -> Unsubscribe:
        """Call ``callback(race_id)`` after every successful fetch."""
        return self._listeners.subscribe(_UPDATED_CHANNEL, callback)

    def process(self, data: ResultsData) -> ResultsData:
        """Track the race, schedule a fetch and merge one results snapshot."""
        with self._lock:
            if data.race_id != self._race_id:
                self._switch_race_locked(data.race_id)
            if not is_second_run(data.race_id):
                return data
            self._schedule_fetch_locked(data.race_id)
        return self.merge(data)

    def merge(self, data: ResultsData) -> ResultsData:
        """Merge with what is known now, without scheduling a fetch."""
        with self._lock:
            if not is_second_run(data.race_id) or data.race_id != self._race_id:
                return data
            cache: dict[str, CachedRuns] = self._cache
            penalties: dict[str, int] = {
                bib: pen for bib, (pen, _) in self._penalties.items()
            }
        rows: tuple[ResultRow, ...] = merge_runs(data.results, cache, penalties)
        if rows is data.results:
            return data
        return data.model_copy(update={"results": rows})

    def update_on_course(self, competitors: tuple[Competitor, ...], full: bool = True) -> None:
        """Record live penalties; expire entries past the grace period.

        Only full snapshots expire entries: a partial update lists one
        competitor and says nothing about the others.
        """
        with self._lock:
            if not is_second_run(self._race_id):
                return
            now_ms: float = self._clock()
            for competitor in competitors:
                self._penalties[competitor.bib] = (live_penalty(competitor), now_ms)
            if not full:
                return
            listed: set[str] = {c.bib for c in competitors}
            for bib, (_, seen_ms) in list(self._penalties.items()):
                if bib not in listed and now_ms - seen_ms > self._config.penalty_grace_ms:
                    del self._penalties[bib]

    def close(self) -> None:
        """Cancel any scheduled fetch."""
        with self._lock:
            self._cancel_fetch_locked()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "race_id": self._race_id,
                "cached_runs": len(self._cache),
                "live_penalties": len(self._penalties),
                "fetches": self._fetches,
                "fetch_errors": self._fetch_errors,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _fetch_from_server(self, race_id: str) -> dict[str, CachedRuns]:
        return fetch_merged_results(
            self._config.server_url, race_id, self._config.timeout_s
        )

    def _switch_race_locked(self, race_id: str) -> None:
        logger.info("Race changed: %s -> %s", self._race_id or "-", race_id or "-")
        self._cancel_fetch_locked()
        self._race_id = race_id
        self._cache = {}
        self._penalties = {}

    def _schedule_fetch_locked(self, race_id: str) -> None:
        if self._fetch is None:
            return
        self._cancel_fetch_locked()
        generation: int = self._fetch_generation
        self._fetch_timer = self._timer_factory(
            self._config.debounce_ms,
            lambda: self._run_fetch(race_id, generation),
        )

    def _cancel_fetch_locked(self) -> None:
        self._fetch_generation += 1
        if self._fetch_timer is not None:
            self._fetch_timer.cancel()
            self._fetch_timer = None

    def _run_fetch(self, race_id: str, generation: int) -> None:
        with self._lock:
            if generation != self._fetch_generation or self._fetch is None:
                return
            self._fetch_timer = None
            fetch: Callable[[str], dict[str, CachedRuns]] = self._fetch

        try:
            cache: dict[str, CachedRuns] = fetch(race_id)
        except FeedError as exc:
            with self._lock:
                self._fetch_errors += 1
            logger.warning("Merged results fetch for %s failed: %s", race_id, exc.message)
            return

        with self._lock:
            self._fetches += 1
            if race_id != self._race_id:
                logger.debug("Dropping merged results for stale race %s", race_id)
                return
            self._cache = cache
        logger.info("Loaded %d merged results for %s", len(cache), race_id)
        self._listeners.emit(_UPDATED_CHANNEL, race_id)
