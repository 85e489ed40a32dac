"""Rating classifier: the single decision point between auto-reply and manual handling."""

from enum import Enum

AUTO_REPLY_MIN_RATING = 4
MIN_RATING = 1
MAX_RATING = 5


class ReplyBranch(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


def classify_rating(rating: int) -> ReplyBranch:
    """
    Map a 1-5 star rating to its workflow branch.

    4-5 stars get an automatic reply; 1-3 stars go to the manual queue.
    Ratings outside 1-5 raise ValueError.
    """
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValueError(f"Rating must be an integer, got {rating!r}")
    if rating < MIN_RATING or rating > MAX_RATING:
        raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}")
    if rating >= AUTO_REPLY_MIN_RATING:
        return ReplyBranch.AUTO
    return ReplyBranch.MANUAL
