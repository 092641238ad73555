"""
Tests for backoff tiers and random delays.
"""

import pytest

from harvester.utils.backoff import TieredBackoff, random_delay_ms


class TestTieredBackoff:
    """Tests for the CAPTCHA wait tiers."""

    def test_default_tiers_repeat_last(self) -> None:
        # Given: The default tiers
        backoff = TieredBackoff()

        # When: Asking for successive waits
        minutes = [backoff.delay_minutes(n) for n in range(6)]

        # Then: 5, 15, 30, 60 and 60 from then on
        assert minutes == [5, 15, 30, 60, 60, 60]

    def test_custom_tiers(self) -> None:
        backoff = TieredBackoff.from_minutes([2, 4])
        assert [backoff.delay_minutes(n) for n in range(3)] == [2, 4, 4]

    def test_negative_attempt(self) -> None:
        with pytest.raises(ValueError):
            TieredBackoff().delay_minutes(-1)

    @pytest.mark.parametrize("tiers", [[], [5, 0]])
    def test_invalid_tiers(self, tiers: list[float]) -> None:
        with pytest.raises(ValueError):
            TieredBackoff.from_minutes(tiers)


class TestRandomDelay:
    def test_within_bounds(self) -> None:
        # Given/When: Many draws
        values = {random_delay_ms(100, 200) for _ in range(200)}

        # Then: All inside the closed range
        assert min(values) >= 100
        assert max(values) <= 200

    def test_swapped_and_negative_bounds(self) -> None:
        # Given: Reversed bounds and a negative lower bound
        # When/Then: Bounds are normalized
        assert 0 <= random_delay_ms(50, -10) <= 50
        assert random_delay_ms(0, 0) == 0
