"""Tests for degree centrality and the retrieval boost."""

import pytest

from recollect.centrality import (
    CentralityManager,
    calculate_degree_centrality,
    normalize_centrality,
)
from recollect.models import MemoryLink


def link(source, target):
    return MemoryLink(source_id=source, target_id=target, relation="related", weight=1.0)


class TestDegree:

    def test_degree_counts_both_directions(self):
        links = [link(1, 2), link(1, 3), link(3, 1)]
        assert calculate_degree_centrality(links) == {1: 3, 2: 1, 3: 2}

    def test_normalize_by_maximum(self):
        normalized = normalize_centrality({1: 6, 2: 3, 3: 1})

        assert normalized[1] == 1.0
        assert normalized[2] == 0.5
        assert normalized[3] == pytest.approx(0.1667, abs=1e-4)

    def test_normalize_empty(self):
        assert normalize_centrality({}) == {}


class TestCentralityManager:

    @pytest.mark.asyncio
    async def test_cache_tracks_live_graph(self, store, make_memory, test_settings):
        hub = await make_memory("hub")
        a = await make_memory("a")
        b = await make_memory("b")
        await store.create_link(hub.id, a.id, "related")
        await store.create_link(hub.id, b.id, "related")

        manager = CentralityManager(store, test_settings)
        assert await manager.update_centrality_cache() == {"updated": 3}
        scores = await store.get_centrality_scores()
        assert scores == {hub.id: 1.0, a.id: 0.5, b.id: 0.5}

        await store.invalidate_memory(b.id, a.id)
        assert await manager.update_centrality_cache() == {"updated": 2}
        assert await store.get_centrality_scores() == {hub.id: 1.0, a.id: 1.0}

    @pytest.mark.asyncio
    async def test_boost_reorders_results(self, store, make_memory, test_settings):
        hub = await make_memory("hub")
        a = await make_memory("a")
        b = await make_memory("b")
        await store.create_link(hub.id, a.id, "related")
        await store.create_link(hub.id, b.id, "related")

        manager = CentralityManager(store, test_settings)
        await manager.update_centrality_cache()

        results = [
            {"id": a.id, "similarity": 0.80},
            {"id": hub.id, "similarity": 0.78},
            {"id": 999, "similarity": 0.79},
        ]
        boosted = await manager.apply_centrality_boost(results, boost_weight=0.1)

        assert [r["id"] for r in boosted] == [hub.id, a.id, 999]
        assert boosted[0]["similarity"] == pytest.approx(0.88)
        assert boosted[1]["similarity"] == pytest.approx(0.85)
        assert boosted[2]["similarity"] == pytest.approx(0.79)
        # Input untouched
        assert results[0]["similarity"] == 0.80

    @pytest.mark.asyncio
    async def test_boost_capped_and_disabled(self, store, make_memory, test_settings):
        hub = await make_memory("hub")
        a = await make_memory("a")
        await store.create_link(hub.id, a.id, "related")

        manager = CentralityManager(store, test_settings)
        await manager.update_centrality_cache()

        boosted = await manager.apply_centrality_boost([{"id": hub.id, "similarity": 0.97}], boost_weight=0.5)
        assert boosted[0]["similarity"] == 1.0

        results = [{"id": hub.id, "similarity": 0.5}]
        assert await manager.apply_centrality_boost(results, enabled=False) == results
        assert await manager.apply_centrality_boost([]) == []
