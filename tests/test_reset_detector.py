"""
Reset detection: fullness, safety margin, cooldown and novelty checks.
"""
from datetime import datetime, timedelta, timezone

import pytest

from quota_waker.storage import RESET_COOLDOWNS_KEY, RESET_INSTANTS_KEY
from quota_waker.triggers.reset_detector import ResetDetector

KEY = "acct1:modelA"
RESET_A = "2024-01-01T00:00:00Z"


@pytest.fixture
def detector(store, clock):
    return ResetDetector(store, clock=clock)


class TestShouldTrigger:

    def test_first_full_reset_triggers(self, detector):
        assert detector.should_trigger(KEY, RESET_A, 100, 100) is True

    def test_partial_quota_never_triggers(self, detector):
        assert detector.should_trigger(KEY, RESET_A, 99, 100) is False

    def test_same_reset_after_mark_is_rejected(self, detector, clock):
        detector.mark_triggered(KEY, RESET_A)
        clock.advance(minutes=30)
        assert detector.should_trigger(KEY, RESET_A, 100, 100) is False

    def test_new_reset_within_cooldown_is_rejected(self, detector, clock):
        detector.mark_triggered(KEY, RESET_A)
        clock.advance(minutes=5)
        assert detector.should_trigger(KEY, "2024-01-01T00:05:00Z", 100, 100) is False

    def test_new_reset_after_cooldown_triggers(self, detector, clock):
        detector.mark_triggered(KEY, RESET_A)
        clock.advance(minutes=10)
        assert detector.should_trigger(KEY, "2024-01-01T05:00:00Z", 100, 100) is True

    def test_keys_are_independent(self, detector):
        detector.mark_triggered(KEY, RESET_A)
        assert detector.should_trigger("acct2:modelA", RESET_A, 100, 100) is True


class TestSafetyMargin:

    def test_exactly_two_minutes_is_not_eligible(self, store, clock):
        store.set(RESET_INSTANTS_KEY, {KEY: RESET_A})
        clock.set(datetime(2024, 1, 1, 0, 2, tzinfo=timezone.utc))
        detector = ResetDetector(store, clock=clock)

        assert detector.should_trigger(KEY, "2024-01-01T05:00:00Z", 100, 100) is False

    def test_one_millisecond_past_margin_is_eligible(self, store, clock):
        store.set(RESET_INSTANTS_KEY, {KEY: RESET_A})
        clock.set(datetime(2024, 1, 1, 0, 2, tzinfo=timezone.utc) + timedelta(milliseconds=1))
        detector = ResetDetector(store, clock=clock)

        assert detector.should_trigger(KEY, "2024-01-01T05:00:00Z", 100, 100) is True

    def test_corrupt_prior_instant_is_ignored(self, store, clock):
        store.set(RESET_INSTANTS_KEY, {KEY: "not-a-date"})
        detector = ResetDetector(store, clock=clock)

        assert detector.should_trigger(KEY, RESET_A, 100, 100) is True


class TestResetOrder:

    def test_older_reset_after_cooldown_is_rejected(self, detector, store, clock):
        clock.set(datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc))
        detector.mark_triggered(KEY, "2024-01-01T05:00:00Z")
        clock.set(datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc))

        assert detector.claim(KEY, "2024-01-01T03:00:00Z", 100, 100) is False
        assert store.get(RESET_INSTANTS_KEY) == {KEY: "2024-01-01T05:00:00Z"}

    def test_same_instant_in_other_notation_is_rejected(self, detector, clock):
        detector.mark_triggered(KEY, "2024-01-01T05:00:00Z")
        clock.advance(hours=6)

        assert detector.should_trigger(KEY, "2024-01-01T05:00:00+00:00", 100, 100) is False

    def test_newer_reset_still_claimed(self, detector, store, clock):
        detector.mark_triggered(KEY, RESET_A)
        clock.advance(hours=1)

        assert detector.claim(KEY, "2024-01-01T05:00:00Z", 100, 100) is True
        assert store.get(RESET_INSTANTS_KEY) == {KEY: "2024-01-01T05:00:00Z"}


class TestMarkAndClaim:

    def test_mark_persists_both_maps(self, detector, store, clock):
        detector.mark_triggered(KEY, RESET_A)

        assert store.get(RESET_INSTANTS_KEY) == {KEY: RESET_A}
        assert store.get(RESET_COOLDOWNS_KEY) == {KEY: int(clock.now.timestamp() * 1000)}

    def test_claim_fires_at_most_once_per_reset(self, detector, clock):
        results = []
        for _ in range(5):
            results.append(detector.claim(KEY, RESET_A, 100, 100))
            clock.advance(minutes=15)

        assert results == [True, False, False, False, False]

    def test_claim_without_fullness_does_not_mark(self, detector, store):
        assert detector.claim(KEY, RESET_A, 50, 100) is False
        assert store.get(RESET_INSTANTS_KEY) is None

    def test_forget_account_drops_only_its_keys(self, detector, store):
        detector.mark_triggered("a@example.com:m1", RESET_A)
        detector.mark_triggered("b@example.com:m1", RESET_A)

        detector.forget_account("a@example.com")

        assert list(store.get(RESET_INSTANTS_KEY)) == ["b@example.com:m1"]
        assert list(store.get(RESET_COOLDOWNS_KEY)) == ["b@example.com:m1"]
