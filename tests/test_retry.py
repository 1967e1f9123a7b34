"""Tests for the retry policy and deadlines."""

import pytest

from fragxfer.transfer.retry import AttemptOutcome, Deadline, RetryPolicy


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRetryPolicy:
    """Tests for the backoff schedule."""

    def test_first_attempt_never_waits(self):
        assert RetryPolicy().delay_for(1) == 0

    def test_exponential_schedule(self):
        policy = RetryPolicy(attempts=9)
        assert policy.schedule() == [0, 1, 2, 4, 8, 16, 30, 30, 30]

    @pytest.mark.parametrize("attempt", range(2, 40))
    def test_delay_capped(self, attempt):
        delay = RetryPolicy().delay_for(attempt)
        assert delay == min(2 ** (attempt - 2), 30)
        assert delay <= 30

    def test_from_max_retries(self):
        assert RetryPolicy.from_max_retries(3).attempts == 3
        assert RetryPolicy.from_max_retries(1).attempts == 1

    def test_zero_retries_is_one_attempt(self):
        assert RetryPolicy.from_max_retries(0).attempts == 1

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy.from_max_retries(-1)

    def test_custom_base_and_cap(self):
        policy = RetryPolicy(attempts=5, base_delay=0.5, max_delay=1.5)
        assert policy.schedule() == [0, 0.5, 1.0, 1.5, 1.5]


class TestAttemptOutcome:
    """Tests for the per-attempt result value."""

    def test_success(self):
        outcome = AttemptOutcome(attempt=1, delay=0, result="tx")
        assert outcome.succeeded

    def test_failure(self):
        outcome = AttemptOutcome(attempt=2, delay=1, error=RuntimeError("boom"))
        assert not outcome.succeeded

    def test_immutable(self):
        outcome = AttemptOutcome(attempt=1, delay=0)
        with pytest.raises(AttributeError):
            outcome.attempt = 2


class TestDeadline:
    """Tests for deadline composition."""

    def test_unbounded(self):
        deadline = Deadline.after(None, clock=FakeClock())
        assert not deadline.bounded
        assert deadline.remaining() is None
        assert not deadline.expired()
        assert deadline.allows(10 ** 9)

    def test_remaining_and_expiry(self):
        clock = FakeClock()
        deadline = Deadline.after(10, clock=clock)

        assert deadline.remaining() == 10
        clock.now += 4
        assert deadline.remaining() == 6
        clock.now += 7
        assert deadline.remaining() == 0
        assert deadline.expired()

    def test_child_takes_earlier_deadline(self):
        clock = FakeClock()
        overall = Deadline.after(10, clock=clock)

        assert overall.child(3).expires_at == clock.now + 3
        assert overall.child(30).expires_at == overall.expires_at
        assert overall.child(None).expires_at == overall.expires_at

    def test_child_of_unbounded(self):
        clock = FakeClock()
        assert Deadline.after(None, clock=clock).child(5).remaining() == 5

    def test_allows(self):
        deadline = Deadline.after(10, clock=FakeClock())
        assert deadline.allows(9.9)
        assert not deadline.allows(10)
        assert not deadline.allows(30)
