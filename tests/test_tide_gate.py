from datetime import datetime, timedelta

from pipeline import TideRealtimeState
from timeutils import VN_TZ

STATION = "VT"


def vn(*args):
    return datetime(*args, tzinfo=VN_TZ)


class TestShouldCall:

    def setup_method(self):
        self.state = TideRealtimeState()

    def test_unseen_station_is_called(self):
        assert self.state.should_call(STATION, vn(2025, 7, 1, 10, 17)) is True

    def test_scheduled_slot_too_soon_after_last_call(self):
        self.state.record_success(STATION, vn(2025, 7, 1, 6, 0))
        assert self.state.should_call(STATION, vn(2025, 7, 1, 9, 2)) is False

    def test_scheduled_slot_after_six_hours(self):
        self.state.record_success(STATION, vn(2025, 7, 1, 3, 0))
        assert self.state.should_call(STATION, vn(2025, 7, 1, 9, 2)) is True

    def test_outside_slot_hour(self):
        self.state.record_success(STATION, vn(2025, 7, 1, 3, 0))
        assert self.state.should_call(STATION, vn(2025, 7, 1, 10, 2)) is False

    def test_outside_slot_minutes(self):
        self.state.record_success(STATION, vn(2025, 7, 1, 3, 0))
        assert self.state.should_call(STATION, vn(2025, 7, 1, 9, 6)) is False
        assert self.state.should_call(STATION, vn(2025, 7, 1, 9, 30)) is False

    def test_slot_window_edges(self):
        assert self.state.is_scheduled_time(vn(2025, 7, 1, 0, 0))
        assert self.state.is_scheduled_time(vn(2025, 7, 1, 21, 5))
        assert not self.state.is_scheduled_time(vn(2025, 7, 1, 22, 0))

    def test_error_backoff_holds_for_twelve_hours(self):
        last = vn(2025, 7, 1, 0, 0)
        self.state.record_success(STATION, last)
        for _ in range(4):
            self.state.record_failure(STATION)

        assert self.state.should_call(STATION, last + timedelta(hours=9, minutes=2)) is False
        assert self.state.should_call(STATION, vn(2025, 7, 1, 15, 2)) is True

    def test_three_errors_do_not_trigger_backoff(self):
        self.state.record_success(STATION, vn(2025, 7, 1, 0, 0))
        for _ in range(3):
            self.state.record_failure(STATION)
        assert self.state.should_call(STATION, vn(2025, 7, 1, 9, 2)) is True

    def test_success_resets_the_error_count(self):
        for _ in range(5):
            self.state.record_failure(STATION)
        self.state.record_success(STATION, vn(2025, 7, 1, 0, 0))
        assert self.state.error_count[STATION] == 0

    def test_uses_injected_clock(self):
        state = TideRealtimeState(clock=lambda: vn(2025, 7, 1, 12, 3))
        state.record_success(STATION)
        assert state.last_call_time[STATION] == vn(2025, 7, 1, 12, 3)
        assert state.should_call(STATION) is False


class TestStatus:

    def setup_method(self):
        self.state = TideRealtimeState()

    def test_next_scheduled_call(self):
        assert self.state.next_scheduled_call(vn(2025, 7, 1, 10, 15)) == vn(2025, 7, 1, 12, 0)
        assert self.state.next_scheduled_call(vn(2025, 7, 1, 12, 0)) == vn(2025, 7, 1, 15, 0)
        assert self.state.next_scheduled_call(vn(2025, 7, 1, 22, 40)) == vn(2025, 7, 2, 0, 0)

    def test_status_reports_health(self):
        self.state.record_success("A", vn(2025, 7, 1, 9, 0))
        for _ in range(4):
            self.state.record_failure("B")

        status = self.state.status(vn(2025, 7, 1, 10, 15))

        assert status["A"]["is_healthy"] is True
        assert status["A"]["last_call_time"] == vn(2025, 7, 1, 9, 0)
        assert status["B"]["is_healthy"] is False
        assert status["B"]["last_call_time"] is None
        assert status["B"]["error_count"] == 4
        assert status["A"]["next_scheduled_call"] == vn(2025, 7, 1, 12, 0)
