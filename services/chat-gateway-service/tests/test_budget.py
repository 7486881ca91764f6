from conftest import FakeClock

from app.core.budget import AttemptBudget


def test_attempt_timeout_is_capped_by_remaining_minus_guard():
    clock = FakeClock(0.0)
    budget = AttemptBudget(total_ms=13000, guard_ms=1200, clock=clock)
    assert budget.attempt_timeout_ms(10000) == 10000

    clock.advance(10)
    assert budget.remaining_ms() == 3000
    assert budget.attempt_timeout_ms(10000) == 1800


def test_attempt_timeout_never_negative():
    clock = FakeClock(0.0)
    budget = AttemptBudget(total_ms=13000, guard_ms=1200, clock=clock)
    clock.advance(12.5)
    assert budget.attempt_timeout_ms(4000) == 0
    clock.advance(5)
    assert budget.remaining_ms() < 0
    assert budget.attempt_timeout_ms(4000) == 0


def test_started_at_counts_time_spent_before_budget_creation():
    clock = FakeClock(50.0)
    budget = AttemptBudget(total_ms=13000, guard_ms=1200, clock=clock, started_at=48.0)
    assert budget.elapsed_ms() == 2000
    assert budget.remaining_ms() == 11000


def test_can_afford_requires_reserve_above_guard():
    clock = FakeClock(0.0)
    budget = AttemptBudget(total_ms=5000, guard_ms=1200, clock=clock)
    assert budget.can_afford(3000) is True
    clock.advance(0.8)
    assert budget.can_afford(3000) is False
