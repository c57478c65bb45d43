"""Tests for the memory store and relation graph persistence."""

import pytest

from recollect.models import Memory, MemoryLink

from conftest import vec


class TestMemories:

    @pytest.mark.asyncio
    async def test_create_and_get_memory(self, store):
        mem = await store.create_memory(
            "Use WAL mode for SQLite",
            embedding=vec(1.0, 0.5),
            tags=["db", "sqlite", "db"],
            source="session:abc"
        )

        assert mem.id is not None
        loaded = await store.get_memory(mem.id)
        assert loaded.content == "Use WAL mode for SQLite"
        assert loaded.tags == ["db", "sqlite"]
        assert loaded.vector == pytest.approx(vec(1.0, 0.5))
        assert loaded.is_live

    @pytest.mark.asyncio
    async def test_live_memories_exclude_invalidated_and_unembedded(self, store):
        a = await store.create_memory("a", embedding=vec(1.0))
        b = await store.create_memory("b", embedding=vec(0.0, 1.0))
        await store.create_memory("no vector")

        await store.invalidate_memory(a.id, b.id)

        live = await store.get_live_memories(with_embeddings=True)
        assert [m.id for m in live] == [b.id]
        assert len(await store.get_live_memories(with_embeddings=False)) == 2
        assert await store.count_memories(live_only=True) == 2
        assert await store.count_memories(live_only=False) == 3

    @pytest.mark.asyncio
    async def test_invalidate_rejects_self(self, store):
        a = await store.create_memory("a")
        with pytest.raises(ValueError):
            await store.invalidate_memory(a.id, a.id)

    @pytest.mark.asyncio
    async def test_invalidate_rejects_invalidated_replacement(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        c = await store.create_memory("c")
        await store.invalidate_memory(b.id, c.id)

        with pytest.raises(ValueError):
            await store.invalidate_memory(a.id, b.id)

    @pytest.mark.asyncio
    async def test_invalidation_repoints_chains(self, store):
        """Memories invalidated by X follow X to its replacement."""
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        c = await store.create_memory("c")

        await store.invalidate_memory(a.id, b.id)
        await store.invalidate_memory(b.id, c.id)

        assert (await store.get_memory(a.id)).invalidated_by == c.id
        assert (await store.get_memory(b.id)).invalidated_by == c.id

    @pytest.mark.asyncio
    async def test_restore_memory(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")

        assert await store.restore_memory(a.id) is False

        await store.invalidate_memory(a.id, b.id)
        assert await store.restore_memory(a.id) is True
        assert (await store.get_memory(a.id)).is_live

    @pytest.mark.asyncio
    async def test_delete_memory_removes_links(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        await store.create_link(a.id, b.id, "related")

        assert await store.delete_memory(a.id) is True
        assert await store.get_memory(a.id) is None
        assert await store.get_all_links(live_only=False) == []

    @pytest.mark.asyncio
    async def test_update_tags(self, store):
        a = await store.create_memory("a", tags=["x"])
        await store.update_memory_tags(a.id, ["y", "x", "y"])
        assert (await store.get_memory(a.id)).tags == ["x", "y"]


class TestLinks:

    @pytest.mark.asyncio
    async def test_create_link_is_idempotent(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")

        link_id, created = await store.create_link(a.id, b.id, "similar_to", 0.8)
        again_id, created_again = await store.create_link(a.id, b.id, "similar_to", 0.9)

        assert created is True
        assert created_again is False
        assert again_id == link_id
        links = await store.get_all_links()
        assert len(links) == 1
        assert links[0].weight == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_same_pair_different_relations_allowed(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        await store.create_link(a.id, b.id, "similar_to")
        await store.create_link(a.id, b.id, "leads_to")
        assert len(await store.get_all_links()) == 2

    @pytest.mark.asyncio
    async def test_invalid_relation_and_self_link_rejected(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        with pytest.raises(ValueError):
            await store.create_link(a.id, b.id, "friends_with")
        with pytest.raises(ValueError):
            await store.create_link(a.id, a.id, "related")

    @pytest.mark.asyncio
    async def test_has_link_between_either_direction(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        c = await store.create_memory("c")
        await store.create_link(a.id, b.id, "related")

        assert await store.has_link_between(a.id, b.id)
        assert await store.has_link_between(b.id, a.id)
        assert not await store.has_link_between(a.id, c.id)

    @pytest.mark.asyncio
    async def test_live_graph_excludes_invalidated_endpoints(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        c = await store.create_memory("c")
        await store.create_link(a.id, b.id, "related")
        await store.create_link(b.id, c.id, "related")

        await store.invalidate_memory(c.id, a.id)

        live = await store.get_all_links(live_only=True)
        assert [(l.source_id, l.target_id) for l in live] == [(a.id, b.id)]
        assert len(await store.get_all_links(live_only=False)) == 2

    @pytest.mark.asyncio
    async def test_transfer_links_skips_self_and_existing(self, store):
        keep = await store.create_memory("keep")
        gone = await store.create_memory("gone")
        x = await store.create_memory("x")
        y = await store.create_memory("y")

        await store.create_link(gone.id, keep.id, "similar_to", 0.9)  # would be a self-link
        await store.create_link(gone.id, x.id, "related", 0.5)
        await store.create_link(y.id, gone.id, "leads_to", 0.7)
        await store.create_link(keep.id, x.id, "related", 0.4)  # already present

        transferred = await store.transfer_links(gone.id, keep.id)

        assert transferred == 1
        assert await store.find_link(y.id, keep.id, "leads_to") is not None
        assert (await store.find_link(keep.id, x.id, "related")).weight == pytest.approx(0.4)
        # Originals stay with the source memory
        links = await store.get_memory_links(gone.id)
        assert len(links["outgoing"]) == 2
        assert len(links["incoming"]) == 1

    @pytest.mark.asyncio
    async def test_update_and_delete_links(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        link_id, _ = await store.create_link(a.id, b.id, "similar_to", 0.5)

        assert await store.update_link(link_id, relation="caused_by", weight=0.9, llm_enriched=True)
        link = await store.get_link(link_id)
        assert link.relation == "caused_by"
        assert link.llm_enriched is True

        assert await store.delete_links_by_ids([link_id]) == 1
        assert await store.get_link(link_id) is None
        assert await store.delete_links_by_ids([]) == 0

    @pytest.mark.asyncio
    async def test_isolated_memory_ids(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        c = await store.create_memory("c")
        d = await store.create_memory("d")
        await store.create_link(a.id, b.id, "related")
        await store.create_link(c.id, d.id, "related")
        await store.invalidate_memory(d.id, a.id)

        # c's only link goes to an invalidated memory
        assert await store.find_isolated_memory_ids() == [c.id]

    @pytest.mark.asyncio
    async def test_graph_stats(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")
        await store.create_memory("c")
        await store.create_link(a.id, b.id, "similar_to", 0.8)

        stats = await store.get_graph_stats()
        assert stats["total_memories"] == 3
        assert stats["total_links"] == 1
        assert stats["isolated_memories"] == 1
        assert stats["relations"] == {"similar_to": 1}


class TestCentralityCache:

    @pytest.mark.asyncio
    async def test_replace_is_wholesale(self, store):
        a = await store.create_memory("a")
        b = await store.create_memory("b")

        await store.replace_centrality_scores({a.id: (2, 1.0), b.id: (1, 0.5)})
        await store.replace_centrality_scores({b.id: (3, 1.0)})

        assert await store.get_centrality_scores() == {b.id: 1.0}
        assert await store.get_centrality_scores([a.id]) == {}
        assert await store.get_centrality_scores([]) == {}


class TestModels:

    def test_memory_to_dict(self):
        mem = Memory(id=1, content="c", tags=["t"], source="s", type="decision")
        d = mem.to_dict()
        assert d["content"] == "c"
        assert d["tags"] == ["t"]
        assert d["invalidated_by"] is None

    def test_link_to_dict(self):
        link = MemoryLink(id=1, source_id=1, target_id=2, relation="related", weight=0.5, llm_enriched=False)
        assert link.to_dict()["llm_enriched"] is False
