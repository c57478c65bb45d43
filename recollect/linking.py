"""
Graph Linking - embedding-based auto links and contextual proximity links.

Auto links connect a memory to its nearest live neighbours with similar_to
edges (later typed by the relation classifier). Proximity links connect
memories that keep showing up in the same contexts (same session, same
directory) even when their text is unrelated.
"""

import logging
from collections import defaultdict
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import Settings, settings
from .models import Memory
from .store import MemoryStore
from .vectors import normalize_rows

logger = logging.getLogger(__name__)


def normalize_source(source: Optional[str]) -> str:
    """
    Group similar sources together.

    File paths collapse to their directory (when the last segment looks
    like a file name), anything else is lower-cased.
    """
    if not source:
        return ""

    trimmed = source.strip()
    if "/" in trimmed or "\\" in trimmed:
        path = trimmed.replace("\\", "/")
        parts = path.split("/")
        if len(parts) > 1 and "." in parts[-1]:
            return "/".join(parts[:-1])
        return path

    return trimmed.lower()


def memory_contexts(memory: Memory, tag_prefixes: Sequence[str]) -> List[str]:
    """Contexts a memory occurred in: its normalized source plus context tags."""
    contexts = []
    source = normalize_source(memory.source)
    if source:
        contexts.append(f"source:{source}")
    for tag in memory.tags or []:
        if any(tag.startswith(prefix) for prefix in tag_prefixes):
            contexts.append(tag)
    return sorted(set(contexts))


def calculate_proximity(
    memories: Iterable[Memory],
    tag_prefixes: Sequence[str] = ("session:", "file:")
) -> List[Dict[str, Any]]:
    """
    Co-occurrence of memories across shared contexts.

    Returns pairs {node_1, node_2, count, contexts} with node_1 < node_2.
    """
    groups: Dict[str, List[int]] = defaultdict(list)
    for memory in memories:
        for context in memory_contexts(memory, tag_prefixes):
            groups[context].append(memory.id)

    pairs: Dict[Tuple[int, int], Dict[str, Any]] = {}
    for context, ids in groups.items():
        if len(ids) < 2:
            continue
        for a, b in combinations(sorted(set(ids)), 2):
            entry = pairs.setdefault((a, b), {"node_1": a, "node_2": b, "count": 0, "contexts": []})
            entry["count"] += 1
            entry["contexts"].append(context)

    return sorted(pairs.values(), key=lambda p: (p["node_1"], p["node_2"]))


class GraphLinker:
    """Creates similar_to and proximity links in the live graph."""

    def __init__(self, store: MemoryStore, config: Optional[Settings] = None):
        self.store = store
        self.config = config or settings

    # =========================================================================
    # Auto-linking
    # =========================================================================

    def find_related_for_linking(
        self,
        memory: Memory,
        corpus: Sequence[Memory],
        threshold: float,
        limit: Optional[int] = None
    ) -> List[Tuple[Memory, float]]:
        """Live neighbours of memory with cosine >= threshold, best first."""
        query = memory.vector
        if not query:
            return []

        others = [m for m in corpus if m.id != memory.id and m.is_live]
        decoded = [(m, m.vector) for m in others]
        decoded = [(m, v) for m, v in decoded if v and len(v) == len(query)]
        if not decoded:
            return []

        matrix = normalize_rows(np.asarray([v for _, v in decoded], dtype=np.float32))
        q = normalize_rows(np.asarray([query], dtype=np.float32))[0]
        sims = matrix @ q

        order = np.argsort(-sims, kind="stable")
        related = []
        for index in order:
            score = float(sims[index])
            if score < threshold:
                break
            related.append((decoded[index][0], score))
            if limit is not None and len(related) >= limit:
                break
        return related

    async def create_auto_links(
        self,
        memory_id: int,
        threshold: Optional[float] = None,
        max_links: Optional[int] = None,
        corpus: Optional[Sequence[Memory]] = None,
        llm_enriched: bool = False
    ) -> int:
        """
        Link a live memory to its most similar live memories.

        Pairs that are already linked in either direction are skipped.
        With llm_enriched the new links are stored as already classified.
        Returns the number of links created.
        """
        threshold = self.config.auto_link_threshold if threshold is None else threshold
        max_links = self.config.auto_link_max_links if max_links is None else max_links

        memory = await self.store.get_memory(memory_id)
        if memory is None or not memory.is_live or not memory.embedding:
            return 0

        if corpus is None:
            corpus = await self.store.get_live_memories(with_embeddings=True)

        created = 0
        for other, score in self.find_related_for_linking(memory, corpus, threshold):
            if created >= max_links:
                break
            if await self.store.has_link_between(memory.id, other.id):
                continue
            _, was_created = await self.store.create_link(
                memory.id, other.id, "similar_to", score, llm_enriched=llm_enriched
            )
            created += int(was_created)

        if created:
            logger.debug(f"Auto-linked memory #{memory_id} to {created} neighbour(s)")
        return created

    async def auto_link_all(
        self,
        threshold: Optional[float] = None,
        max_links: Optional[int] = None
    ) -> Dict[str, int]:
        """Run auto-linking over every live memory (graph bootstrap)."""
        corpus = await self.store.get_live_memories(with_embeddings=True)
        total = 0
        for memory in corpus:
            total += await self.create_auto_links(memory.id, threshold, max_links, corpus=corpus)

        logger.info(f"Auto-linked {len(corpus)} memories, {total} links created")
        return {"processed": len(corpus), "links_created": total}

    # =========================================================================
    # Contextual proximity
    # =========================================================================

    async def create_proximity_links(
        self,
        min_cooccurrence: Optional[int] = None,
        dry_run: bool = False
    ) -> Dict[str, int]:
        """
        Link unlinked memories that share at least min_cooccurrence contexts.

        Weight is count / max_count over the qualifying pairs.
        """
        if min_cooccurrence is None:
            min_cooccurrence = self.config.proximity_min_cooccurrence

        memories = await self.store.get_live_memories(with_embeddings=False)
        pairs = [
            p for p in calculate_proximity(memories, self.config.proximity_tag_prefixes)
            if p["count"] >= min_cooccurrence
        ]

        if dry_run:
            return {"created": 0, "skipped": 0, "total_pairs": len(pairs)}

        max_count = max([1] + [p["count"] for p in pairs])
        created = 0
        skipped = 0

        for pair in pairs:
            a, b = pair["node_1"], pair["node_2"]
            if await self.store.has_link_between(a, b):
                skipped += 1
                continue
            _, was_created = await self.store.create_link(a, b, "related", pair["count"] / max_count)
            if was_created:
                created += 1
            else:
                skipped += 1

        logger.info(f"Proximity linking: {created} created, {skipped} skipped of {len(pairs)} pairs")
        return {"created": created, "skipped": skipped, "total_pairs": len(pairs)}
