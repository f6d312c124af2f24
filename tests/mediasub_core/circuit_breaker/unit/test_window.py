import pytest

from mediasub_core.circuit_breaker import RollingWindow


@pytest.mark.parametrize(
    ("duration", "buckets", "message"),
    [
        (0.0, 10, "duration must be > 0"),
        (10.0, 0, "buckets must be >= 1"),
    ],
)
def test_rolling_window_validation(duration: float, buckets: int, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RollingWindow(duration=duration, buckets=buckets)


def test_counts_outcomes_inside_the_window() -> None:
    window = RollingWindow(duration=10.0, buckets=10)

    window.record_success(100.0)
    window.record_failure(100.5)
    window.record_failure(104.2)

    assert window.counts(105.0) == (1, 2)


def test_whole_buckets_expire_once_outside_the_window() -> None:
    window = RollingWindow(duration=10.0, buckets=10)
    window.record_failure(100.0)
    window.record_success(105.0)

    assert window.counts(109.9) == (1, 1)
    assert window.counts(110.0) == (1, 0)
    assert window.counts(115.0) == (0, 0)


def test_reset_clears_all_buckets() -> None:
    window = RollingWindow(duration=10.0, buckets=10)
    window.record_failure(1.0)
    window.record_success(2.0)

    window.reset()

    assert window.counts(2.0) == (0, 0)
