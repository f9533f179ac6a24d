"""Unit tests for exponential backoff helpers."""
import pytest

from livefeed.utils.backoff import compute_backoff_delay, nominal_backoff_delay


@pytest.mark.unit
class TestBackoff:
    def test_nominal_delay_grows_exponentially_until_cap(self):
        delays = [nominal_backoff_delay(k, 1.0, 2.0, 30.0) for k in range(8)]
        assert delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert delays[5:] == [30.0, 30.0, 30.0]

    def test_nominal_delay_is_non_decreasing(self):
        delays = [nominal_backoff_delay(k, 0.5, 3.0, 20.0) for k in range(10)]
        assert delays == sorted(delays)
        assert max(delays) == 20.0

    @pytest.mark.parametrize("rand_value", [0.0, 0.25, 0.5, 0.999])
    def test_jitter_stays_within_ten_percent(self, rand_value):
        for attempt in range(7):
            nominal = nominal_backoff_delay(attempt, 1.0, 2.0, 30.0)
            delay = compute_backoff_delay(attempt, rand=lambda: rand_value)
            assert nominal * 0.9 - 1e-9 <= delay <= nominal * 1.1 + 1e-9

    def test_midpoint_random_value_gives_nominal_delay(self):
        assert compute_backoff_delay(3, rand=lambda: 0.5) == pytest.approx(8.0)

    def test_zero_jitter_returns_nominal(self):
        assert compute_backoff_delay(2, jitter_ratio=0, rand=lambda: 0.9) == 4.0

    def test_delay_never_negative(self):
        assert compute_backoff_delay(0, initial=0.0, rand=lambda: 0.0) == 0.0
