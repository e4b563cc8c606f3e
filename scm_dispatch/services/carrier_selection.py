"""
Carrier quote selection.

Policies rank accepted quotes; select_best_quote() applies one and labels
the pick with a selection reason for analytics:

    only_option       single accepted quote
    lowest_price      selected quote is the cheapest
    fastest_delivery  selected quote is the fastest (but not cheapest)
    best_balance      neither; won on the weighted score
"""
import logging
from typing import List, Sequence, Tuple

from scm_dispatch.services.carrier_quote_client import QuoteOutcome

logger = logging.getLogger(__name__)


class SelectionReason:
    ONLY_OPTION = "only_option"
    LOWEST_PRICE = "lowest_price"
    FASTEST_DELIVERY = "fastest_delivery"
    BEST_BALANCE = "best_balance"


def _days(quote: QuoteOutcome) -> float:
    # Unknown transit time sorts last
    return quote.estimated_delivery_days if quote.estimated_delivery_days is not None else float("inf")


class SelectionPolicy:
    """Orders accepted quotes best-first."""

    name = "base"

    def rank(self, quotes: Sequence[QuoteOutcome]) -> List[QuoteOutcome]:
        raise NotImplementedError


class LowestPriceSelectionPolicy(SelectionPolicy):
    """Cheapest quote; ties go to the more reliable carrier, then the faster one."""

    name = "lowest_price"

    def rank(self, quotes: Sequence[QuoteOutcome]) -> List[QuoteOutcome]:
        return sorted(
            quotes,
            key=lambda q: (q.quoted_price, -q.reliability_score, _days(q), q.carrier_code),
        )


class WeightedScoreSelectionPolicy(SelectionPolicy):
    """
    Weighted score over normalized price, speed and carrier reliability.

    Price and speed are min-max normalized across the quotes (lower is
    better); when every quote has the same value that component scores 1.
    """

    name = "weighted_score"

    def __init__(self, price_weight: float = 0.5, speed_weight: float = 0.3, reliability_weight: float = 0.2):
        self.price_weight = price_weight
        self.speed_weight = speed_weight
        self.reliability_weight = reliability_weight

    def score(self, quote: QuoteOutcome, quotes: Sequence[QuoteOutcome]) -> float:
        prices = [float(q.quoted_price) for q in quotes]
        max_price, min_price = max(prices), min(prices)
        if max_price == min_price:
            price_score = 1.0
        else:
            price_score = (max_price - float(quote.quoted_price)) / (max_price - min_price)

        known_days = [q.estimated_delivery_days for q in quotes if q.estimated_delivery_days is not None]
        if quote.estimated_delivery_days is None:
            speed_score = 0.0
        elif max(known_days) == min(known_days):
            speed_score = 1.0
        else:
            speed_score = (max(known_days) - quote.estimated_delivery_days) / (max(known_days) - min(known_days))

        return (
            price_score * self.price_weight
            + speed_score * self.speed_weight
            + quote.reliability_score * self.reliability_weight
        )

    def rank(self, quotes: Sequence[QuoteOutcome]) -> List[QuoteOutcome]:
        return sorted(
            quotes,
            key=lambda q: (-self.score(q, quotes), q.quoted_price, q.carrier_code),
        )


def determine_selection_reason(selected: QuoteOutcome, quotes: Sequence[QuoteOutcome]) -> str:
    if len(quotes) == 1:
        return SelectionReason.ONLY_OPTION

    cheapest = min(q.quoted_price for q in quotes)
    if selected.quoted_price == cheapest:
        return SelectionReason.LOWEST_PRICE

    fastest = min(_days(q) for q in quotes)
    if _days(selected) == fastest:
        return SelectionReason.FASTEST_DELIVERY

    return SelectionReason.BEST_BALANCE


def select_best_quote(
    quotes: Sequence[QuoteOutcome],
    policy: SelectionPolicy = None,
) -> Tuple[QuoteOutcome, str]:
    """Best accepted quote and the reason it was picked."""
    accepted = [q for q in quotes if q.accepted]
    if not accepted:
        raise ValueError("No accepted quotes to select from")

    policy = policy or LowestPriceSelectionPolicy()
    best = policy.rank(accepted)[0]
    reason = determine_selection_reason(best, accepted)

    logger.info(
        f"Selected {best.carrier_code} at {best.quoted_price} "
        f"({reason}, policy={policy.name}, {len(accepted)} quote(s))"
    )
    return best, reason
