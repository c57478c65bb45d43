"""
Graph Centrality - degree centrality and the retrieval boost derived from it.

Well-connected memories are usually the load-bearing ones, so retrieval
results get a small bonus proportional to their normalized degree.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .config import Settings, settings
from .store import MemoryStore

logger = logging.getLogger(__name__)


def calculate_degree_centrality(links: Iterable) -> Dict[int, int]:
    """Degree = outgoing + incoming link count, for every endpoint seen."""
    degrees: Dict[int, int] = {}
    for link in links:
        degrees[link.source_id] = degrees.get(link.source_id, 0) + 1
        degrees[link.target_id] = degrees.get(link.target_id, 0) + 1
    return degrees


def normalize_centrality(raw: Dict[int, int]) -> Dict[int, float]:
    """Scale degrees into 0-1 by the maximum degree."""
    if not raw:
        return {}
    max_degree = max(raw.values())
    if max_degree <= 0:
        return {}
    return {memory_id: degree / max_degree for memory_id, degree in raw.items()}


class CentralityManager:
    """Keeps the centrality cache in sync with the live graph."""

    def __init__(self, store: MemoryStore, config: Optional[Settings] = None):
        self.store = store
        self.config = config or settings

    async def update_centrality_cache(self) -> Dict[str, int]:
        links = await self.store.get_all_links(live_only=True)
        raw = calculate_degree_centrality(links)
        normalized = normalize_centrality(raw)

        scores = {memory_id: (degree, normalized.get(memory_id, 0.0)) for memory_id, degree in raw.items()}
        updated = await self.store.replace_centrality_scores(scores)

        logger.info(f"Centrality cache updated for {updated} memories")
        return {"updated": updated}

    async def apply_centrality_boost(
        self,
        results: List[Dict[str, Any]],
        boost_weight: Optional[float] = None,
        enabled: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        """
        Add boost_weight * normalized_degree to each result's similarity.

        Results are dicts with "id" and "similarity"; the boosted score is
        capped at 1.0 and the list re-sorted, highest first.
        """
        enabled = self.config.centrality_enabled if enabled is None else enabled
        boost_weight = self.config.centrality_boost_weight if boost_weight is None else boost_weight
        if not enabled or not results:
            return results

        ids = [r["id"] for r in results if r.get("id") is not None]
        scores = await self.store.get_centrality_scores(ids)

        boosted = []
        for r in results:
            if r.get("id") is None:
                boosted.append(r)
                continue
            bonus = scores.get(r["id"], 0.0) * boost_weight
            boosted.append({**r, "similarity": min(1.0, r["similarity"] + bonus)})

        boosted.sort(key=lambda r: r["similarity"], reverse=True)
        return boosted
