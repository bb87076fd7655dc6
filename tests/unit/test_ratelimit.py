"""
Unit tests for per-actor export/import cooldowns.
"""

from datetime import datetime, timedelta, timezone

import pytest

from familyarchive.core.exceptions import RateLimitError
from familyarchive.ratelimit import RateLimiter, SqliteRateLimitLedger


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def ledger():
    ledger = SqliteRateLimitLedger(":memory:")
    yield ledger
    ledger.close()


@pytest.fixture
def clock():
    return FakeClock()


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_first_request_allowed(self, ledger, clock):
        """Test that an actor with no history is not limited."""
        RateLimiter(ledger, clock=clock).check("u1", "export")

    def test_cooldown_enforced(self, ledger, clock):
        """Test that a repeat inside the cooldown is rejected."""
        limiter = RateLimiter(ledger, clock=clock)
        limiter.record("u1", "export")
        clock.advance(100)

        with pytest.raises(RateLimitError, match="wait 200 seconds before another export") as exc_info:
            limiter.check("u1", "export")

        assert exc_info.value.retry_after_seconds == pytest.approx(200)

    def test_cooldown_elapsed(self, ledger, clock):
        """Test that the actor may repeat once the cooldown has passed."""
        limiter = RateLimiter(ledger, clock=clock)
        limiter.record("u1", "export")
        clock.advance(300)

        limiter.check("u1", "export")

    def test_actions_are_independent(self, ledger, clock):
        """Test that an export does not limit an import."""
        limiter = RateLimiter(ledger, clock=clock)
        limiter.record("u1", "export")

        limiter.check("u1", "import")

    def test_actors_are_independent(self, ledger, clock):
        """Test that one actor does not limit another."""
        limiter = RateLimiter(ledger, clock=clock)
        limiter.record("u1", "export")

        limiter.check("u2", "export")

    def test_anonymous_is_not_limited(self, ledger, clock):
        """Test that requests without an actor are neither limited nor recorded."""
        limiter = RateLimiter(ledger, clock=clock)
        limiter.record(None, "export")

        limiter.check(None, "export")

    def test_zero_cooldown_disables(self, ledger, clock):
        """Test that a zero cooldown turns limiting off."""
        limiter = RateLimiter(ledger, cooldowns={"export": 0}, clock=clock)
        limiter.record("u1", "export")

        limiter.check("u1", "export")
        assert ledger.get_last("u1", "export") is None

    def test_ledger_shared_between_limiters(self, tmp_path, clock):
        """Test that cooldowns persist in the ledger file."""
        path = tmp_path / "limits.db"
        first = SqliteRateLimitLedger(path)
        RateLimiter(first, clock=clock).record("u1", "import")
        first.close()

        second = SqliteRateLimitLedger(path)
        try:
            with pytest.raises(RateLimitError):
                RateLimiter(second, clock=clock).check("u1", "import")
        finally:
            second.close()


class TestSqliteRateLimitLedger:
    """Tests for the ledger itself."""

    def test_record_overwrites(self, ledger):
        """Test that recording again keeps only the latest time."""
        early = datetime(2024, 1, 1, tzinfo=timezone.utc)
        late = datetime(2024, 1, 2, tzinfo=timezone.utc)

        ledger.record("u1", "export", early)
        ledger.record("u1", "export", late)

        assert ledger.get_last("u1", "export") == late
