from datetime import datetime, time
import pytest
from fleet_rollout.window import MaintenanceWindow


class TestMaintenanceWindow:
    """Weekly maintenance window parsing and matching."""

    def test_parse_single_day(self):
        window = MaintenanceWindow.parse("Sun 02:00-06:00")
        assert window.days == (6,)
        assert window.start == time(2, 0)
        assert window.end == time(6, 0)
        assert str(window) == "Sun 02:00-06:00"

    def test_parse_day_list(self):
        window = MaintenanceWindow.parse("saturday, Sun 1:30 - 5:00")
        assert window.days == (5, 6)
        assert str(window) == "Sat,Sun 01:30-05:00"

    def test_contains(self):
        window = MaintenanceWindow.parse("Sun 02:00-06:00")
        # 2026-10-18 is a Sunday
        assert window.contains(datetime(2026, 10, 18, 2, 0))
        assert window.contains(datetime(2026, 10, 18, 5, 59))
        assert not window.contains(datetime(2026, 10, 18, 6, 0))
        assert not window.contains(datetime(2026, 10, 18, 1, 59))
        assert not window.contains(datetime(2026, 10, 14, 3, 0))

    @pytest.mark.parametrize("text", ["", "02:00-06:00", "Sun 02:00", "Sun 2-6", "Sun 06:00-06:00",
                                      "Noday 02:00-06:00", "Sun 25:00-26:00"])
    def test_invalid_windows(self, text):
        with pytest.raises(ValueError):
            MaintenanceWindow.parse(text)
