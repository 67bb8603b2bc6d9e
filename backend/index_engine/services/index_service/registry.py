"""Definitions of the indices the engine manages."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from index_engine.core.config import settings
from index_engine.core.exceptions import UnknownIndexError

BROAD = "broad"
THEMATIC = "thematic"


@dataclass(frozen=True)
class IndexDefinition:
    index_id: int
    symbol: str
    name: str
    mode: str  # broad | thematic
    category: str | None = None  # provider category for thematic indices

    @property
    def min_market_cap(self) -> float:
        if self.mode == BROAD:
            return settings.broad_min_market_cap
        return settings.thematic_min_market_cap

    @property
    def consolidates(self) -> bool:
        """Whether the terminal rebalance folds secondary-exchange weight into the target pair."""
        return self.index_id in settings.consolidation_index_ids_set


INDEX_DEFINITIONS: Dict[int, IndexDefinition] = {
    21: IndexDefinition(21, "SY100", "SY100", BROAD),
    22: IndexDefinition(22, "SYAZ", "A16Z Crypto Portfolio", THEMATIC, "andreessen-horowitz-a16z-portfolio"),
    23: IndexDefinition(23, "SYL2", "Layer 2 Tokens", THEMATIC, "layer-2"),
    24: IndexDefinition(24, "SYAI", "Artificial Intelligence Tokens", THEMATIC, "artificial-intelligence"),
    25: IndexDefinition(25, "SYME", "Meme Tokens", THEMATIC, "meme-token"),
    27: IndexDefinition(27, "SYDF", "Decentralized Finance Tokens", THEMATIC, "decentralized-finance-defi"),
}


def get_index_definition(index_id: int) -> IndexDefinition:
    try:
        return INDEX_DEFINITIONS[index_id]
    except KeyError:
        raise UnknownIndexError(index_id) from None


def list_index_definitions() -> List[IndexDefinition]:
    return sorted(INDEX_DEFINITIONS.values(), key=lambda d: d.index_id)
