"""
Tests for human-like page interaction helpers.
"""

import random

import pytest

from harvester.crawler.human_behavior import ScrollConfig, SkimScroll, popup_button_matches


class TestPopupButtonMatches:
    """Tests for dialog button label matching."""

    @pytest.mark.parametrize("label", ["OK", "  Accept all ", "Nein danke", "Not now", "Später"])
    def test_dismiss_labels(self, label: str) -> None:
        assert popup_button_matches(label) is True

    @pytest.mark.parametrize("label", ["", "Book now", "Settings", "Look"])
    def test_other_labels(self, label: str) -> None:
        # Given: Labels that merely contain a short keyword, or none at all
        # When/Then: No match
        assert popup_button_matches(label) is False


class TestSkimScroll:
    """Tests for scroll sequence generation."""

    def test_reaches_bottom_without_negative_positions(self) -> None:
        # Given: A long page and a seeded generator
        scroll = SkimScroll(rng=random.Random(42))

        # When: Generating a sequence
        steps = scroll.generate(page_height=5000, viewport_height=1000)

        # Then: Never above the top, ends within the bottom margin
        assert steps
        assert all(step.position >= 0 for step in steps)
        assert steps[-1].position >= 5000 - 1000 - ScrollConfig().bottom_margin

    def test_short_page_needs_no_scroll(self) -> None:
        steps = SkimScroll(rng=random.Random(1)).generate(page_height=800, viewport_height=1000)
        assert steps == []

    def test_step_cap(self) -> None:
        # Given: A tiny step size and a huge page
        config = ScrollConfig(min_step=1, max_step=1, max_steps=10, reverse_probability=0.0)

        # When: Generating
        steps = SkimScroll(config, random.Random(3)).generate(page_height=100_000, viewport_height=1000)

        # Then: The cap stops the sequence
        assert len(steps) == 10
        assert [s.position for s in steps] == list(range(1, 11))
