"""
Tests for the rating classifier.
"""

import pytest

from workflow.classifier import ReplyBranch, classify_rating


class TestClassifyRating:
    @pytest.mark.parametrize("rating", [4, 5])
    def test_high_ratings_auto_reply(self, rating):
        assert classify_rating(rating) == ReplyBranch.AUTO

    @pytest.mark.parametrize("rating", [1, 2, 3])
    def test_low_ratings_go_to_manual_queue(self, rating):
        assert classify_rating(rating) == ReplyBranch.MANUAL

    @pytest.mark.parametrize("rating", [0, 6, -1])
    def test_out_of_range_rejected(self, rating):
        with pytest.raises(ValueError, match="between 1 and 5"):
            classify_rating(rating)

    @pytest.mark.parametrize("rating", [3.5, "5", None, True])
    def test_non_integer_rejected(self, rating):
        with pytest.raises(ValueError, match="integer"):
            classify_rating(rating)

    def test_branch_values_are_strings(self):
        assert ReplyBranch.AUTO == "auto"
        assert ReplyBranch.MANUAL == "manual"
