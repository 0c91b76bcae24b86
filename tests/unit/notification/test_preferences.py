"""Tests for quiet-hours arithmetic and the preference repository."""

from datetime import datetime, timezone

import pytest

from notification.preferences import (
    NotificationPreferences,
    QuietHours,
    end_of_quiet_hours,
    is_in_quiet_hours,
)
from notification.repositories import PreferenceRepository


def at(hour, minute=0, day=10):
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


class TestQuietHours:

    @pytest.mark.parametrize("moment, expected", [
        (at(23), True),
        (at(2), True),
        (at(7, 59), True),
        (at(8), False),
        (at(12), False),
        (at(21, 59), False),
        (at(22), True),
    ])
    def test_window_wrapping_midnight(self, moment, expected):
        assert is_in_quiet_hours(moment, QuietHours(start='22:00', end='08:00')) is expected

    def test_same_day_window(self):
        quiet = QuietHours(start='13:00', end='15:00')
        assert is_in_quiet_hours(at(14), quiet)
        assert not is_in_quiet_hours(at(15), quiet)
        assert not is_in_quiet_hours(at(12), quiet)

    def test_disabled_or_empty_window(self):
        assert not is_in_quiet_hours(at(23), QuietHours(enabled=False))
        assert not is_in_quiet_hours(at(23), QuietHours(start='10:00', end='10:00'))
        assert not is_in_quiet_hours(at(23), None)

    def test_end_rolls_to_next_day(self):
        assert end_of_quiet_hours(at(23), QuietHours()) == at(8, day=11)
        assert end_of_quiet_hours(at(7), QuietHours()) == at(8)

    def test_unknown_timezone_falls_back_to_utc(self):
        quiet = QuietHours(timezone='Mars/Olympus_Mons')
        assert is_in_quiet_hours(at(23), quiet)


class TestPreferences:

    def test_untouched_types_stay_enabled(self):
        prefs = NotificationPreferences(user_id='u1', notification_types={'like': False})
        assert not prefs.type_enabled('like')
        assert prefs.type_enabled('comment')

    def test_repository_round_trip(self, store):
        repo = PreferenceRepository(store)
        assert repo.get('u1') is None

        repo.save(NotificationPreferences(
            user_id='u1', locale='fr', quiet_hours=QuietHours(start='23:00', end='07:00')
        ))
        loaded = repo.get('u1')
        assert loaded.locale == 'fr'
        assert loaded.quiet_hours.start == '23:00'

        repo.delete('u1')
        assert repo.get('u1') is None
