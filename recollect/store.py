"""
Memory Store - persistence for memories, graph links and cached centrality.

All mutating methods accept an optional session. Without one they open
their own unit of work; with one they join the caller's, so multi-step
operations (duplicate resolution, merges, undo) commit or roll back as a
single unit.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, delete, update, or_, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .database import DatabaseManager
from .models import Memory, MemoryLink, CentralityScore, LINK_RELATIONS
from . import vectors

logger = logging.getLogger(__name__)


class MemoryStore:
    """
    Storage interface used by consolidation and graph maintenance.

    Usage:
        store = MemoryStore(db_manager)
        mem = await store.create_memory("Use WAL mode", embedding=[...])
        link_id, created = await store.create_link(mem.id, other.id, "similar_to", 0.8)
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    @asynccontextmanager
    async def _scope(self, session: Optional[AsyncSession]):
        if session is not None:
            yield session
        else:
            async with self.db.get_session() as own:
                yield own

    # =========================================================================
    # Memories
    # =========================================================================

    async def create_memory(
        self,
        content: str,
        embedding: Optional[Sequence[float]] = None,
        tags: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
        type: str = "observation",
        quality_score: Optional[float] = None,
        quality_factors: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        session: Optional[AsyncSession] = None
    ) -> Memory:
        """Persist a new memory and return it (with its id assigned)."""
        memory = Memory(
            content=content,
            embedding=vectors.encode(embedding) if embedding is not None else None,
            tags=sorted(set(tags or [])),
            source=source,
            type=type or "observation",
            quality_score=quality_score,
            quality_factors=quality_factors,
            access_count=0,
            created_at=created_at or datetime.now(timezone.utc),
        )
        async with self._scope(session) as s:
            s.add(memory)
            await s.flush()  # Get the ID
        return memory

    async def get_memory(self, memory_id: int, session: Optional[AsyncSession] = None) -> Optional[Memory]:
        async with self._scope(session) as s:
            return await s.get(Memory, memory_id)

    async def get_memories(self, memory_ids: Iterable[int]) -> Dict[int, Memory]:
        ids = list(set(memory_ids))
        if not ids:
            return {}
        async with self.db.get_session() as session:
            result = await session.execute(select(Memory).where(Memory.id.in_(ids)))
            return {m.id: m for m in result.scalars().all()}

    async def get_live_memories(self, with_embeddings: bool = True) -> List[Memory]:
        """Memories not invalidated, ordered by id (optionally only embedded ones)."""
        async with self.db.get_session() as session:
            query = select(Memory).where(Memory.invalidated_by.is_(None))
            if with_embeddings:
                query = query.where(Memory.embedding.isnot(None))
            result = await session.execute(query.order_by(Memory.id))
            return list(result.scalars().all())

    async def count_memories(self, live_only: bool = True) -> int:
        async with self.db.get_session() as session:
            query = select(func.count(Memory.id))
            if live_only:
                query = query.where(Memory.invalidated_by.is_(None))
            result = await session.execute(query)
            return result.scalar() or 0

    async def invalidate_memory(
        self,
        memory_id: int,
        replaced_by: int,
        session: Optional[AsyncSession] = None
    ) -> None:
        """
        Soft-delete a memory in favour of a live replacement.

        Memories previously invalidated by this one are repointed to the
        replacement so invalidated_by never points at an invalidated memory.
        """
        if memory_id == replaced_by:
            raise ValueError(f"Memory #{memory_id} cannot invalidate itself")

        async with self._scope(session) as s:
            memory = await s.get(Memory, memory_id)
            replacement = await s.get(Memory, replaced_by)
            if memory is None:
                raise ValueError(f"Memory #{memory_id} not found")
            if replacement is None:
                raise ValueError(f"Replacement memory #{replaced_by} not found")
            if memory.invalidated_by is not None:
                raise ValueError(f"Memory #{memory_id} is already invalidated by #{memory.invalidated_by}")
            if replacement.invalidated_by is not None:
                raise ValueError(f"Replacement memory #{replaced_by} is invalidated")

            await s.execute(
                update(Memory)
                .where(Memory.invalidated_by == memory_id)
                .values(invalidated_by=replaced_by)
            )
            memory.invalidated_by = replaced_by
            await s.flush()

    async def restore_memory(self, memory_id: int, session: Optional[AsyncSession] = None) -> bool:
        """Clear invalidated_by. Returns False if the memory was never invalidated."""
        async with self._scope(session) as s:
            memory = await s.get(Memory, memory_id)
            if memory is None or memory.invalidated_by is None:
                return False
            memory.invalidated_by = None
            await s.flush()
            return True

    async def reassign_invalidated(self, memory_id: int, session: Optional[AsyncSession] = None) -> int:
        """
        Hand memories absorbed by memory_id back to their own superseders.

        Used on undo: memories that were repointed onto memory_id when it
        replaced their superseder follow their supersedes trail back to the
        nearest memory outside the absorbed set.
        """
        async with self._scope(session) as s:
            result = await s.execute(select(Memory).where(Memory.invalidated_by == memory_id))
            absorbed = {m.id: m for m in result.scalars().all()}
            if not absorbed:
                return 0

            links = await s.execute(
                select(MemoryLink).where(
                    MemoryLink.relation == "supersedes",
                    MemoryLink.target_id.in_(list(absorbed)),
                    MemoryLink.source_id != memory_id
                ).order_by(MemoryLink.id)
            )
            superseder = {link.target_id: link.source_id for link in links.scalars().all()}

            def resolve(mid: int) -> Optional[int]:
                seen = {mid}
                parent = superseder.get(mid)
                while parent is not None and parent in absorbed:
                    if parent in seen:
                        return None
                    seen.add(parent)
                    parent = superseder.get(parent)
                return parent

            moved = 0
            for mid, memory in absorbed.items():
                target = resolve(mid)
                if target is not None:
                    memory.invalidated_by = target
                    moved += 1
            await s.flush()
            return moved

    async def delete_memory(self, memory_id: int, session: Optional[AsyncSession] = None) -> bool:
        """Hard delete a memory together with its links and cached score."""
        async with self._scope(session) as s:
            memory = await s.get(Memory, memory_id)
            if memory is None:
                return False
            await s.execute(
                delete(MemoryLink).where(
                    or_(MemoryLink.source_id == memory_id, MemoryLink.target_id == memory_id)
                )
            )
            await s.execute(delete(CentralityScore).where(CentralityScore.memory_id == memory_id))
            await s.delete(memory)
            await s.flush()
            return True

    async def update_memory_tags(
        self,
        memory_id: int,
        tags: Iterable[str],
        session: Optional[AsyncSession] = None
    ) -> bool:
        async with self._scope(session) as s:
            memory = await s.get(Memory, memory_id)
            if memory is None:
                return False
            memory.tags = sorted(set(tags))
            return True

    # =========================================================================
    # Links
    # =========================================================================

    async def create_link(
        self,
        source_id: int,
        target_id: int,
        relation: str = "related",
        weight: float = 1.0,
        llm_enriched: bool = False,
        session: Optional[AsyncSession] = None
    ) -> Tuple[int, bool]:
        """
        Create a link, or return the existing one with the same endpoints
        and relation. Returns (link_id, created).
        """
        if relation not in LINK_RELATIONS:
            raise ValueError(
                f"Invalid relation '{relation}'. Valid: {', '.join(sorted(LINK_RELATIONS))}"
            )
        if source_id == target_id:
            raise ValueError("Cannot link a memory to itself")

        async with self._scope(session) as s:
            existing = await s.execute(
                select(MemoryLink).where(
                    MemoryLink.source_id == source_id,
                    MemoryLink.target_id == target_id,
                    MemoryLink.relation == relation
                )
            )
            found = existing.scalar_one_or_none()
            if found is not None:
                return found.id, False

            link = MemoryLink(
                source_id=source_id,
                target_id=target_id,
                relation=relation,
                weight=weight,
                llm_enriched=llm_enriched
            )
            s.add(link)
            await s.flush()  # Get the ID

            logger.debug(f"Created link: {source_id} --{relation}--> {target_id} ({weight:.3f})")
            return link.id, True

    async def get_link(self, link_id: int) -> Optional[MemoryLink]:
        async with self.db.get_session() as session:
            return await session.get(MemoryLink, link_id)

    async def find_link(
        self,
        source_id: int,
        target_id: int,
        relation: str,
        session: Optional[AsyncSession] = None
    ) -> Optional[MemoryLink]:
        async with self._scope(session) as s:
            result = await s.execute(
                select(MemoryLink).where(
                    MemoryLink.source_id == source_id,
                    MemoryLink.target_id == target_id,
                    MemoryLink.relation == relation
                )
            )
            return result.scalar_one_or_none()

    async def has_link_between(
        self,
        memory_a: int,
        memory_b: int,
        session: Optional[AsyncSession] = None
    ) -> bool:
        """True if any link connects the two memories, in either direction."""
        async with self._scope(session) as s:
            result = await s.execute(
                select(MemoryLink.id).where(
                    or_(
                        (MemoryLink.source_id == memory_a) & (MemoryLink.target_id == memory_b),
                        (MemoryLink.source_id == memory_b) & (MemoryLink.target_id == memory_a),
                    )
                ).limit(1)
            )
            return result.first() is not None

    async def get_memory_links(
        self,
        memory_id: int,
        session: Optional[AsyncSession] = None
    ) -> Dict[str, List[MemoryLink]]:
        """All links touching a memory, split into outgoing and incoming."""
        async with self._scope(session) as s:
            outgoing = await s.execute(
                select(MemoryLink).where(MemoryLink.source_id == memory_id).order_by(MemoryLink.id)
            )
            incoming = await s.execute(
                select(MemoryLink).where(MemoryLink.target_id == memory_id).order_by(MemoryLink.id)
            )
            return {
                "outgoing": list(outgoing.scalars().all()),
                "incoming": list(incoming.scalars().all()),
            }

    async def get_supersedes_links(
        self,
        source_id: int,
        session: Optional[AsyncSession] = None
    ) -> List[MemoryLink]:
        async with self._scope(session) as s:
            result = await s.execute(
                select(MemoryLink).where(
                    MemoryLink.source_id == source_id,
                    MemoryLink.relation == "supersedes"
                ).order_by(MemoryLink.id)
            )
            return list(result.scalars().all())

    async def get_all_links(
        self,
        live_only: bool = True,
        relation: Optional[str] = None
    ) -> List[MemoryLink]:
        """
        Links for export and analytics.

        With live_only, only links whose endpoints are both live are returned.
        """
        async with self.db.get_session() as session:
            query = select(MemoryLink)
            if live_only:
                src = aliased(Memory)
                tgt = aliased(Memory)
                query = (
                    query
                    .join(src, MemoryLink.source_id == src.id)
                    .join(tgt, MemoryLink.target_id == tgt.id)
                    .where(src.invalidated_by.is_(None), tgt.invalidated_by.is_(None))
                )
            if relation:
                query = query.where(MemoryLink.relation == relation)
            result = await session.execute(query.order_by(MemoryLink.id))
            return list(result.scalars().all())

    async def update_link(
        self,
        link_id: int,
        relation: Optional[str] = None,
        weight: Optional[float] = None,
        llm_enriched: Optional[bool] = None,
        session: Optional[AsyncSession] = None
    ) -> bool:
        if relation is not None and relation not in LINK_RELATIONS:
            raise ValueError(f"Invalid relation '{relation}'")

        async with self._scope(session) as s:
            link = await s.get(MemoryLink, link_id)
            if link is None:
                return False
            if relation is not None:
                link.relation = relation
            if weight is not None:
                link.weight = weight
            if llm_enriched is not None:
                link.llm_enriched = llm_enriched
            await s.flush()
            return True

    async def delete_links_by_ids(
        self,
        link_ids: Sequence[int],
        session: Optional[AsyncSession] = None
    ) -> int:
        if not link_ids:
            return 0
        async with self._scope(session) as s:
            result = await s.execute(delete(MemoryLink).where(MemoryLink.id.in_(list(link_ids))))
            return result.rowcount or 0

    async def transfer_links(
        self,
        from_id: int,
        to_id: int,
        exclude: Iterable[int] = (),
        session: Optional[AsyncSession] = None
    ) -> int:
        """
        Copy every link of from_id onto to_id.

        Self-links and links to excluded memories are skipped; copies that
        would duplicate an existing edge are no-ops. The originals stay with
        from_id so they come back if it is ever restored.
        """
        skip = set(exclude) | {to_id}
        transferred = 0

        async with self._scope(session) as s:
            links = await self.get_memory_links(from_id, session=s)

            for link in links["outgoing"]:
                if link.target_id in skip:
                    continue
                _, created = await self.create_link(
                    to_id, link.target_id, link.relation, link.weight,
                    llm_enriched=bool(link.llm_enriched), session=s
                )
                transferred += int(created)

            for link in links["incoming"]:
                if link.source_id in skip:
                    continue
                _, created = await self.create_link(
                    link.source_id, to_id, link.relation, link.weight,
                    llm_enriched=bool(link.llm_enriched), session=s
                )
                transferred += int(created)

        if transferred:
            logger.debug(f"Transferred {transferred} link(s) from #{from_id} to #{to_id}")
        return transferred

    async def find_isolated_memory_ids(self) -> List[int]:
        """Live memories with no link to another live memory."""
        memories = await self.get_live_memories(with_embeddings=False)
        links = await self.get_all_links(live_only=True)

        connected = set()
        for link in links:
            connected.add(link.source_id)
            connected.add(link.target_id)

        return [m.id for m in memories if m.id not in connected]

    async def get_graph_stats(self) -> Dict[str, Any]:
        live_count = await self.count_memories(live_only=True)
        links = await self.get_all_links(live_only=True)
        isolated = await self.find_isolated_memory_ids()

        relations: Dict[str, int] = {}
        for link in links:
            relations[link.relation] = relations.get(link.relation, 0) + 1

        return {
            "total_memories": live_count,
            "total_links": len(links),
            "avg_links_per_memory": len(links) / live_count if live_count else 0.0,
            "isolated_memories": len(isolated),
            "relations": relations,
        }

    # =========================================================================
    # Centrality cache
    # =========================================================================

    async def replace_centrality_scores(self, scores: Dict[int, Tuple[int, float]]) -> int:
        """Replace the whole cache with {memory_id: (degree, normalized_degree)}."""
        now = datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            await session.execute(delete(CentralityScore))
            for memory_id, (degree, normalized) in scores.items():
                session.add(CentralityScore(
                    memory_id=memory_id,
                    degree=degree,
                    normalized_degree=normalized,
                    updated_at=now
                ))
        return len(scores)

    async def get_centrality_scores(self, memory_ids: Optional[Iterable[int]] = None) -> Dict[int, float]:
        """Normalized degree by memory id (missing ids are absent)."""
        async with self.db.get_session() as session:
            query = select(CentralityScore)
            if memory_ids is not None:
                ids = list(set(memory_ids))
                if not ids:
                    return {}
                query = query.where(CentralityScore.memory_id.in_(ids))
            result = await session.execute(query)
            return {row.memory_id: row.normalized_degree for row in result.scalars().all()}
