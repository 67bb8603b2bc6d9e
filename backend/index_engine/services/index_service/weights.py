"""Weight distribution, blacklist filtering and terminal consolidation."""
from __future__ import annotations

from typing import Iterable, List

from index_engine.core.exceptions import ConfigurationError

from .models import TOTAL_BPS, Weights


def distribute_weights(n: int, total: int = TOTAL_BPS) -> List[int]:
    """
    Equal weights in basis points summing exactly to ``total``.

    Every slot gets ``total // n``; the first ``total % n`` slots get one more.
    """
    if n <= 0:
        return []
    base, remainder = divmod(total, n)
    return [base + 1 if i < remainder else base for i in range(n)]


def is_blacklisted(
    symbol: str,
    categories: Iterable[str],
    blacklisted_categories: set[str],
    blacklisted_tokens: set[str],
) -> bool:
    if symbol.upper() in blacklisted_tokens:
        return True
    return any(category in blacklisted_categories for category in categories)


def nav_at_rebalance(weights: Weights, prices: dict[str, float]) -> float:
    """Sum of weight share times pair price."""
    return sum(prices[pair] * bps / TOTAL_BPS for pair, bps in weights)


def consolidate_weights(weights: Weights, source_prefix: str, target_pair: str) -> Weights:
    """
    Move every ``source_prefix`` pair's weight onto ``target_pair``.

    Raises ConfigurationError when there is weight to move but the target
    pair is not a constituent.
    """
    folded = sum(bps for pair, bps in weights if pair.startswith(source_prefix))
    kept = [(pair, bps) for pair, bps in weights if not pair.startswith(source_prefix)]
    if folded == 0:
        return kept

    if not any(pair == target_pair for pair, _ in kept):
        raise ConfigurationError(
            f"Cannot fold {folded} bps of {source_prefix}* weight: {target_pair} is not a constituent"
        )
    return [(pair, bps + folded if pair == target_pair else bps) for pair, bps in kept]
