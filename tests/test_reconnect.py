"""Unit tests for core.reconnect module."""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from core.events import ConnectionStatus
from core.reconnect import ReconnectConfig, ReconnectController
from tests.conftest import ManualClock


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def statuses() -> list[ConnectionStatus]:
    return []


@pytest.fixture()
def attempt() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def controller(
    clock: ManualClock,
    attempt: MagicMock,
    statuses: list[ConnectionStatus],
) -> ReconnectController:
    return ReconnectController(
        config=ReconnectConfig(),
        attempt=attempt,
        on_status=statuses.append,
        timer_factory=clock.timer,
    )


def _delays(clock: ManualClock) -> list[float]:
    return [t.delay_ms for t in clock.timers]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestReconnectConfig:
    """Tests for ReconnectConfig validation."""

    def test_defaults(self) -> None:
        cfg: ReconnectConfig = ReconnectConfig()
        assert cfg.auto_reconnect is True
        assert cfg.initial_delay_ms == 1000
        assert cfg.max_delay_ms == 30000

    def test_max_below_initial_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ReconnectConfig(initial_delay_ms=5000, max_delay_ms=1000)

    def test_zero_delay_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ReconnectConfig(initial_delay_ms=0)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestTransitions:
    """Tests for the connection state machine."""

    def test_begin_and_open(
        self,
        controller: ReconnectController,
        statuses: list[ConnectionStatus],
    ) -> None:
        assert controller.begin() is True
        controller.opened()
        assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        assert controller.status == ConnectionStatus.CONNECTED

    def test_begin_is_noop_when_connecting_or_connected(
        self,
        controller: ReconnectController,
    ) -> None:
        controller.begin()
        assert controller.begin() is False
        controller.opened()
        assert controller.begin() is False

    def test_loss_schedules_reconnect(
        self,
        controller: ReconnectController,
        statuses: list[ConnectionStatus],
        clock: ManualClock,
        attempt: MagicMock,
    ) -> None:
        controller.begin()
        controller.opened()

        assert controller.lost() is True
        assert controller.status == ConnectionStatus.RECONNECTING
        assert controller.pending

        clock.advance(1000)

        attempt.assert_called_once()
        assert statuses[-2:] == [ConnectionStatus.RECONNECTING, ConnectionStatus.CONNECTING]

    def test_auto_reconnect_disabled(
        self,
        clock: ManualClock,
        attempt: MagicMock,
        statuses: list[ConnectionStatus],
    ) -> None:
        sut: ReconnectController = ReconnectController(
            config=ReconnectConfig(auto_reconnect=False),
            attempt=attempt,
            on_status=statuses.append,
            timer_factory=clock.timer,
        )
        sut.begin()
        sut.opened()

        assert sut.lost() is False
        assert sut.status == ConnectionStatus.DISCONNECTED
        assert clock.pending == []

    def test_stop_suppresses_reconnect(
        self,
        controller: ReconnectController,
        clock: ManualClock,
        attempt: MagicMock,
    ) -> None:
        controller.begin()
        controller.opened()
        controller.lost()

        controller.stop()
        clock.advance(60_000)

        attempt.assert_not_called()
        assert controller.status == ConnectionStatus.DISCONNECTED
        assert controller.lost() is False

    def test_stop_is_idempotent(
        self,
        controller: ReconnectController,
        statuses: list[ConnectionStatus],
    ) -> None:
        controller.begin()
        controller.stop()
        controller.stop()
        assert statuses.count(ConnectionStatus.DISCONNECTED) == 1

    def test_begin_after_stop_re_enables(
        self,
        controller: ReconnectController,
        clock: ManualClock,
        attempt: MagicMock,
    ) -> None:
        controller.begin()
        controller.stop()
        controller.begin()
        controller.opened()
        controller.lost()

        clock.advance(1000)
        attempt.assert_called_once()

    def test_failing_attempt_reschedules(
        self,
        controller: ReconnectController,
        clock: ManualClock,
        attempt: MagicMock,
    ) -> None:
        attempt.side_effect = OSError("refused")
        controller.begin()
        controller.opened()
        controller.lost()

        clock.advance(1000)
        clock.advance(2000)

        assert attempt.call_count == 2
        assert controller.status == ConnectionStatus.RECONNECTING


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    """Tests for the exponential backoff sequence."""

    def test_default_sequence(
        self,
        controller: ReconnectController,
        clock: ManualClock,
    ) -> None:
        controller.begin()
        controller.opened()
        controller.lost()
        for _ in range(7):
            clock.run_pending()  # attempt fires, then the transport fails again
            controller.lost()

        assert _delays(clock) == [
            1000,
            2000,
            4000,
            8000,
            16000,
            30000,
            30000,
            30000,
        ]

    def test_reset_on_successful_connect(
        self,
        controller: ReconnectController,
        clock: ManualClock,
    ) -> None:
        controller.begin()
        controller.opened()
        controller.lost()
        clock.run_pending()
        controller.lost()
        clock.run_pending()

        controller.opened()
        assert controller.next_delay_ms == 1000
        controller.lost()
        assert clock.pending[0].delay_ms == 1000

    def test_single_pending_attempt(
        self,
        controller: ReconnectController,
        clock: ManualClock,
        attempt: MagicMock,
    ) -> None:
        controller.begin()
        controller.opened()
        controller.lost()
        controller.schedule()
        controller.schedule()

        assert len(clock.pending) == 1
        clock.advance(60_000)
        attempt.assert_called_once()

    def test_cancelled_timer_callback_is_ignored(
        self,
        controller: ReconnectController,
        clock: ManualClock,
        attempt: MagicMock,
    ) -> None:
        controller.begin()
        controller.opened()
        controller.lost()
        stale = clock.pending[0]

        controller.cancel()
        stale.callback()  # a timer thread that already started

        attempt.assert_not_called()
        assert controller.attempts == 0
