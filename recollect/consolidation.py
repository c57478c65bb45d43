"""
Memory Consolidation - find near-duplicate memories and merge or remove them.

Flow:
1. find_candidates: all-pairs similarity over live memories, each pair
   classified by the candidate policy
2. execute: apply each decision (remove duplicate, LLM merge, link)
3. undo: restore the originals behind a supersedes trail

Nothing is physically deleted except a synthetic merge product being
undone; replaced memories are invalidated and linked with supersedes
edges so every step can be reversed.
"""

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .config import Settings, settings
from .models import Memory, SYNTHETIC_MERGE_SOURCE, ensure_utc
from .policy import determine_action, DELETE_DUPLICATE, MERGE, DEFAULT_QUALITY
from .sensitive import scan_sensitive
from .similarity import find_similar_pairs
from .store import MemoryStore

logger = logging.getLogger(__name__)

MERGE_SYSTEM_PROMPT = (
    "You consolidate notes in a developer's long-term memory. "
    "Respond with the merged note only, no preamble."
)

MERGE_PROMPT = """Merge these two overlapping memories into one concise memory.
Keep every distinct fact from both. Remove repetition. Do not invent anything.

Memory A:
{a}

Memory B:
{b}

Merged memory:"""


@dataclass
class ConsolidationCandidate:
    memory1: Memory
    memory2: Memory
    similarity: float
    action: str
    reason: str
    keep_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory1_id": self.memory1.id,
            "memory2_id": self.memory2.id,
            "memory1_content": self.memory1.content,
            "memory2_content": self.memory2.content,
            "similarity": round(self.similarity, 4),
            "action": self.action,
            "reason": self.reason,
            "keep_id": self.keep_id,
        }


@dataclass
class ConsolidationResult:
    candidates_found: int = 0
    merged: int = 0
    deleted: int = 0
    kept: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False
    # Dry-run LLM merges are an upper bound: the real run may fall back to a link
    merged_is_estimate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UndoResult:
    merged_id: int
    restored: List[int] = field(default_factory=list)
    deleted_merge: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[int, int, ConsolidationCandidate], None]


class ConsolidationEngine:
    """
    Finds and resolves redundant memories.

    Usage:
        engine = ConsolidationEngine(store, embedder, llm_backend)
        candidates = await engine.find_candidates()
        result = await engine.execute(candidates, dry_run=True)
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder,
        llm=None,
        config: Optional[Settings] = None
    ):
        self.store = store
        self.embedder = embedder
        self.llm = llm
        self.config = config or settings

    # =========================================================================
    # Candidate discovery
    # =========================================================================

    async def find_candidates(
        self,
        threshold: Optional[float] = None,
        max_candidates: Optional[int] = None,
        skip_guards: bool = False
    ) -> List[ConsolidationCandidate]:
        """
        Find pairs of live memories similar enough to consolidate.

        Unless skip_guards is set, small corpora are left alone and memories
        younger than min_memory_age_days are not considered.

        Raises:
            SimilarityScanError: a similarity worker failed
        """
        threshold = self.config.consolidation_threshold if threshold is None else threshold
        memories = await self.store.get_live_memories(with_embeddings=True)

        if not skip_guards:
            if len(memories) < self.config.min_corpus_size:
                logger.info(
                    f"Skipping consolidation scan: {len(memories)} memories "
                    f"(minimum {self.config.min_corpus_size})"
                )
                return []
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.config.min_memory_age_days)
            memories = [m for m in memories if ensure_utc(m.created_at) <= cutoff]

        memories, embeddings = self._comparable(memories)
        if len(memories) < 2:
            return []

        pairs = await asyncio.to_thread(
            find_similar_pairs,
            embeddings,
            threshold,
            max_candidates,
            self.config.parallel_pair_threshold,
            self.config.max_similarity_workers
        )

        candidates = []
        for pair in pairs:
            m1, m2 = memories[pair.i], memories[pair.j]
            decision = determine_action(m1, m2, pair.similarity)
            candidates.append(ConsolidationCandidate(
                memory1=m1,
                memory2=m2,
                similarity=pair.similarity,
                action=decision.action,
                reason=decision.reason,
                keep_id=decision.keep_id
            ))

        logger.info(f"Found {len(candidates)} consolidation candidate(s) at threshold {threshold}")
        return candidates

    def _comparable(self, memories: List[Memory]):
        """Keep memories whose embedding has the dominant dimension."""
        decoded = [(m, m.vector) for m in memories]
        decoded = [(m, v) for m, v in decoded if v]
        if not decoded:
            return [], []

        dim, _ = Counter(len(v) for _, v in decoded).most_common(1)[0]
        kept = [(m, v) for m, v in decoded if len(v) == dim]
        if len(kept) < len(decoded):
            logger.warning(f"Ignoring {len(decoded) - len(kept)} memories with mismatched embedding size")

        return [m for m, _ in kept], [v for _, v in kept]

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        candidates: List[ConsolidationCandidate],
        dry_run: bool = False,
        use_llm: Optional[bool] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> ConsolidationResult:
        """
        Apply candidate decisions in order.

        A candidate whose memory was already consumed earlier in the batch
        is skipped. Errors are collected per candidate and never abort the
        batch.
        """
        use_llm = self.config.consolidation_use_llm if use_llm is None else use_llm
        llm_ready = bool(use_llm) and self.llm is not None

        result = ConsolidationResult(candidates_found=len(candidates), dry_run=dry_run)
        consumed: Set[int] = set()

        for index, candidate in enumerate(candidates, 1):
            if on_progress:
                on_progress(index, len(candidates), candidate)

            id1, id2 = candidate.memory1.id, candidate.memory2.id
            if id1 in consumed or id2 in consumed:
                result.skipped += 1
                continue

            try:
                if candidate.action == DELETE_DUPLICATE:
                    keep_id = candidate.keep_id if candidate.keep_id in (id1, id2) else id2
                    remove_id = id1 if keep_id == id2 else id2
                    if not dry_run:
                        await self._resolve_duplicate(keep_id, remove_id)
                    consumed.add(remove_id)
                    result.deleted += 1

                elif candidate.action == MERGE:
                    if dry_run:
                        if llm_ready:
                            result.merged += 1
                            result.merged_is_estimate = True
                            consumed.update((id1, id2))
                        else:
                            result.kept += 1
                        continue

                    merged_id = None
                    if llm_ready:
                        merged_id = await self.merge_memories(candidate.memory1, candidate.memory2)
                    if merged_id is not None:
                        consumed.update((id1, id2))
                        result.merged += 1
                    else:
                        await self._link_similar(id1, id2, candidate.similarity)
                        result.kept += 1

                else:
                    if not dry_run:
                        await self._link_similar(id1, id2, candidate.similarity)
                    result.kept += 1

            except Exception as e:
                logger.error(f"Consolidation of #{id1}/#{id2} failed: {e}")
                result.errors.append(f"#{id1}/#{id2}: {e}")

        logger.info(
            f"Consolidation {'(dry run) ' if dry_run else ''}complete: "
            f"{result.merged} merged, {result.deleted} deleted, {result.kept} kept, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    async def _link_similar(self, id1: int, id2: int, similarity: float) -> None:
        await self.store.create_link(id1, id2, "similar_to", similarity)

    async def _resolve_duplicate(self, keep_id: int, remove_id: int) -> None:
        """Move links onto the kept memory, record the replacement, invalidate."""
        async with self.store.db.get_session() as session:
            await self.store.transfer_links(remove_id, keep_id, session=session)
            await self.store.create_link(keep_id, remove_id, "supersedes", 1.0, session=session)
            await self.store.invalidate_memory(remove_id, keep_id, session=session)

        logger.debug(f"Memory #{remove_id} superseded by duplicate #{keep_id}")

    # =========================================================================
    # LLM merge
    # =========================================================================

    async def merge_content(self, content_a: str, content_b: str) -> Optional[str]:
        """
        Ask the LLM for a merged text.

        Returns None when the backend is missing, fails, times out, returns
        nothing, or returns sensitive content that may not be redacted.
        """
        if self.llm is None:
            return None

        prompt = MERGE_PROMPT.format(a=content_a, b=content_b)
        try:
            text = await asyncio.wait_for(
                self.llm.complete(
                    prompt,
                    max_tokens=self.config.llm_merge_max_tokens,
                    timeout=self.config.llm_timeout,
                    system_prompt=MERGE_SYSTEM_PROMPT
                ),
                timeout=self.config.llm_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"LLM merge timed out after {self.config.llm_timeout}s")
            return None
        except Exception as e:
            logger.warning(f"LLM merge failed: {e}")
            return None

        text = (text or "").strip()
        if not text:
            return None

        scan = scan_sensitive(text)
        if scan.has_sensitive:
            kinds = sorted({m.type for m in scan.matches})
            if not self.config.sensitive_auto_redact:
                logger.warning(f"Merged content contains sensitive data ({', '.join(kinds)}); skipping merge")
                return None
            logger.info(f"Redacted sensitive data from merged content ({', '.join(kinds)})")
            text = scan.redacted_text

        return text

    async def merge_memories(self, memory1: Memory, memory2: Memory) -> Optional[int]:
        """
        Replace two memories with one LLM-written memory.

        Returns the new memory's id, or None if no merge happened.
        """
        text = await self.merge_content(memory1.content, memory2.content)
        if not text:
            return None

        try:
            embedding = await asyncio.to_thread(self.embedder.embed, text)
        except Exception as e:
            logger.warning(f"Could not embed merged content: {e}")
            return None

        q1 = memory1.quality_score if memory1.quality_score is not None else DEFAULT_QUALITY
        q2 = memory2.quality_score if memory2.quality_score is not None else DEFAULT_QUALITY
        originals = (memory1.id, memory2.id)

        async with self.store.db.get_session() as session:
            merged = await self.store.create_memory(
                content=text,
                embedding=embedding,
                tags=set(memory1.tags or []) | set(memory2.tags or []),
                source=SYNTHETIC_MERGE_SOURCE,
                type=memory1.type,
                quality_score=(q1 + q2) / 2,
                quality_factors={"merged_from": 2},
                session=session
            )
            for original_id in originals:
                await self.store.transfer_links(original_id, merged.id, exclude=originals, session=session)
            for original_id in originals:
                await self.store.create_link(merged.id, original_id, "supersedes", 1.0, session=session)
            for original_id in originals:
                await self.store.invalidate_memory(original_id, merged.id, session=session)
            merged_id = merged.id

        logger.info(f"Merged #{memory1.id} and #{memory2.id} into #{merged_id}")
        return merged_id

    # =========================================================================
    # Undo
    # =========================================================================

    async def undo(self, merged_id: int) -> UndoResult:
        """
        Restore every memory superseded by merged_id.

        The supersedes links are removed; an LLM-written merge product is
        deleted outright since it has no life of its own.
        """
        result = UndoResult(merged_id=merged_id)

        async with self.store.db.get_session() as session:
            links = await self.store.get_supersedes_links(merged_id, session=session)
            if not links:
                result.errors.append(f"No supersedes links found for memory #{merged_id}")
                return result

            for link in links:
                if await self.store.restore_memory(link.target_id, session=session):
                    result.restored.append(link.target_id)
                else:
                    result.errors.append(f"Memory #{link.target_id} was not invalidated")

            await self.store.delete_links_by_ids([link.id for link in links], session=session)
            await self.store.reassign_invalidated(merged_id, session=session)

            merged = await self.store.get_memory(merged_id, session=session)
            if merged is not None and merged.source == SYNTHETIC_MERGE_SOURCE:
                await self.store.delete_memory(merged_id, session=session)
                result.deleted_merge = True

        logger.info(
            f"Undo #{merged_id}: restored {result.restored}, "
            f"merge {'deleted' if result.deleted_merge else 'kept'}"
        )
        return result

    # =========================================================================
    # Convenience / reporting
    # =========================================================================

    async def consolidate_memories(
        self,
        dry_run: bool = False,
        threshold: Optional[float] = None,
        max_candidates: Optional[int] = None,
        use_llm: Optional[bool] = None,
        skip_guards: bool = False,
        on_progress: Optional[ProgressCallback] = None
    ) -> ConsolidationResult:
        """Find candidates and execute them in one go."""
        if max_candidates is None:
            max_candidates = self.config.consolidation_max_candidates
        candidates = await self.find_candidates(threshold, max_candidates, skip_guards)
        return await self.execute(candidates, dry_run=dry_run, use_llm=use_llm, on_progress=on_progress)

    async def get_consolidation_stats(
        self,
        threshold: Optional[float] = None,
        skip_guards: bool = False
    ) -> Dict[str, Any]:
        """How much consolidation would currently achieve."""
        total = await self.store.count_memories(live_only=True)
        candidates = await self.find_candidates(threshold, None, skip_guards)

        duplicates = sum(1 for c in candidates if c.action == DELETE_DUPLICATE)
        merges = sum(1 for c in candidates if c.action == MERGE)

        return {
            "total_memories": total,
            "duplicate_pairs": duplicates,
            "merge_candidates": merges,
            "potential_reduction": duplicates + merges,
        }

    async def get_consolidation_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Recent replacements, newest first, grouped by the surviving memory."""
        links = await self.store.get_all_links(live_only=False, relation="supersedes")

        groups: Dict[int, List] = defaultdict(list)
        for link in links:
            groups[link.source_id].append(link)

        def latest(group) -> datetime:
            stamps = [ensure_utc(link.created_at) for link in group if link.created_at]
            return max(stamps) if stamps else datetime.min.replace(tzinfo=timezone.utc)

        ordered = sorted(groups.items(), key=lambda item: (latest(item[1]), item[0]), reverse=True)[:limit]
        memories = await self.store.get_memories(source_id for source_id, _ in ordered)

        history = []
        for source_id, group in ordered:
            memory = memories.get(source_id)
            if memory is None:
                continue
            merged_at = latest(group)
            history.append({
                "merged_memory_id": source_id,
                "merged_at": merged_at.isoformat(),
                "original_ids": sorted(link.target_id for link in group),
                "merged_content": memory.content,
                "synthetic": memory.source == SYNTHETIC_MERGE_SOURCE,
            })
        return history
