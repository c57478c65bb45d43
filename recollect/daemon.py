"""
Knowledge Daemon - the process-wide context object.

Owns the database handle, the store, every engine, the cross-process lock
and a small job queue. Constructed on start(), torn down on shutdown();
there is no module-level state besides the settings object.

Every public method returns plain dicts (or lists of dicts).
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .centrality import CentralityManager
from .cleanup import GraphMaintenance
from .communities import CommunityDetector
from .config import Settings, settings
from .consolidation import ConsolidationCandidate, ConsolidationEngine, ConsolidationResult
from .database import DatabaseManager
from .linking import GraphLinker
from .llm import create_backend
from .lock import FileLock
from .logging_config import with_operation_id
from .relations import RelationClassifier
from .similarity import SimilarityScanError
from .store import MemoryStore
from .vectors import EmbeddingProvider

logger = logging.getLogger(__name__)

_UNSET = object()

# Operations that may be queued with enqueue()
JOB_NAMES = (
    "consolidate",
    "enrich_existing_links",
    "enrich_memory_links",
    "create_auto_links",
    "create_proximity_links",
    "detect_communities",
    "update_centrality_cache",
    "graph_cleanup",
)


class KnowledgeDaemon:
    """
    Consolidation and graph maintenance for one memory store.

    Usage:
        async with KnowledgeDaemon() as daemon:
            await daemon.consolidate(dry_run=True)
            await daemon.graph_cleanup()
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        storage_path: Optional[str] = None,
        embedder=None,
        llm=_UNSET
    ):
        self.config = config or settings
        self.storage_path = storage_path or self.config.get_storage_path()
        self._embedder = embedder
        self._llm = llm

        self.running = False
        self.counters: Counter = Counter()
        self.jobs: Optional[asyncio.Queue] = None

        self.db: Optional[DatabaseManager] = None
        self.store: Optional[MemoryStore] = None
        self.embedder = None
        self.llm = None
        self.lock: Optional[FileLock] = None
        self.consolidation: Optional[ConsolidationEngine] = None
        self.classifier: Optional[RelationClassifier] = None
        self.linker: Optional[GraphLinker] = None
        self.communities: Optional[CommunityDetector] = None
        self.centrality: Optional[CentralityManager] = None
        self.maintenance: Optional[GraphMaintenance] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> "KnowledgeDaemon":
        if self.running:
            return self

        self.db = DatabaseManager(self.storage_path, self.config.db_name)
        await self.db.init_db()
        self.store = MemoryStore(self.db)

        self.embedder = self._embedder or EmbeddingProvider(self.config.embedding_model)
        self.llm = create_backend(self.config) if self._llm is _UNSET else self._llm

        self.lock = FileLock(
            self.config.get_lock_path(self.storage_path),
            stale_seconds=self.config.lock_stale_seconds,
            max_wait_seconds=self.config.lock_max_wait_seconds,
            retry_seconds=self.config.lock_retry_seconds
        )

        self.consolidation = ConsolidationEngine(self.store, self.embedder, self.llm, self.config)
        self.classifier = RelationClassifier(self.store, self.llm, self.config)
        self.linker = GraphLinker(self.store, self.config)
        self.communities = CommunityDetector(self.store, self.config)
        self.centrality = CentralityManager(self.store, self.config)
        self.maintenance = GraphMaintenance(
            self.store, self.linker, self.classifier, self.communities, self.centrality, self.config
        )

        self.jobs = asyncio.Queue()
        self.running = True
        logger.info(
            f"Knowledge daemon started (storage: {self.storage_path}, "
            f"llm: {getattr(self.llm, 'name', 'none')})"
        )
        return self

    async def shutdown(self) -> None:
        if not self.running:
            return
        self.running = False

        pending = self.jobs.qsize() if self.jobs else 0
        if pending:
            logger.warning(f"Dropping {pending} queued job(s) on shutdown")
        self.jobs = None

        if self.llm is not None:
            await self.llm.close()
        if self.lock is not None and self.lock.held:
            self.lock.release()
        await self.db.close()

        logger.info("Knowledge daemon stopped")

    async def __aenter__(self) -> "KnowledgeDaemon":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def _require_running(self) -> None:
        if not self.running:
            raise RuntimeError("KnowledgeDaemon is not running; call start() first")

    @property
    def statistics(self) -> Dict[str, int]:
        return dict(self.counters)

    # =========================================================================
    # Job queue
    # =========================================================================

    async def enqueue(self, job: str, **kwargs) -> int:
        """Queue an operation by name; returns the queue length."""
        self._require_running()
        if job not in JOB_NAMES:
            raise ValueError(f"Unknown job '{job}'. Valid: {', '.join(JOB_NAMES)}")
        await self.jobs.put((job, kwargs))
        return self.jobs.qsize()

    async def drain(self) -> List[Dict[str, Any]]:
        """Run every queued job in order; one failing job does not stop the rest."""
        self._require_running()
        outcomes = []
        while not self.jobs.empty():
            job, kwargs = self.jobs.get_nowait()
            try:
                result = await getattr(self, job)(**kwargs)
                outcomes.append({"job": job, "result": result})
            except Exception as e:
                logger.error(f"Queued job {job} failed: {e}")
                self.counters["job_failures"] += 1
                outcomes.append({"job": job, "error": str(e)})
            finally:
                self.jobs.task_done()
        return outcomes

    # =========================================================================
    # Consolidation
    # =========================================================================

    async def _find_candidates(
        self,
        threshold: Optional[float],
        max_candidates: Optional[int],
        skip_guards: bool
    ) -> List[ConsolidationCandidate]:
        try:
            return await self.consolidation.find_candidates(threshold, max_candidates, skip_guards)
        except SimilarityScanError as e:
            logger.error(f"Similarity scan aborted, no candidates this round: {e}")
            self.counters["scan_failures"] += 1
            return []

    @with_operation_id
    async def find_consolidation_candidates(
        self,
        threshold: Optional[float] = None,
        max_candidates: Optional[int] = None,
        skip_guards: bool = False
    ) -> List[Dict[str, Any]]:
        self._require_running()
        self.counters["find_consolidation_candidates"] += 1
        if max_candidates is None:
            max_candidates = self.config.consolidation_max_candidates
        candidates = await self._find_candidates(threshold, max_candidates, skip_guards)
        return [c.to_dict() for c in candidates]

    async def _resolve_candidates(
        self,
        candidates: Sequence[Union[ConsolidationCandidate, Dict[str, Any]]]
    ) -> List[ConsolidationCandidate]:
        """Accept candidate objects or their dict form (as returned above)."""
        wanted = set()
        for c in candidates:
            if isinstance(c, dict):
                wanted.update((c["memory1_id"], c["memory2_id"]))
        memories = await self.store.get_memories(wanted) if wanted else {}

        resolved = []
        for c in candidates:
            if isinstance(c, ConsolidationCandidate):
                resolved.append(c)
                continue
            m1 = memories.get(c["memory1_id"])
            m2 = memories.get(c["memory2_id"])
            if m1 is None or m2 is None:
                raise ValueError(f"Candidate references missing memory #{c['memory1_id']}/#{c['memory2_id']}")
            resolved.append(ConsolidationCandidate(
                memory1=m1,
                memory2=m2,
                similarity=float(c["similarity"]),
                action=c["action"],
                reason=c.get("reason", ""),
                keep_id=c.get("keep_id")
            ))
        return resolved

    @with_operation_id
    async def execute_consolidation(
        self,
        candidates: Sequence[Union[ConsolidationCandidate, Dict[str, Any]]],
        dry_run: bool = False,
        use_llm: Optional[bool] = None,
        on_progress: Optional[Callable] = None
    ) -> Dict[str, Any]:
        self._require_running()
        self.counters["execute_consolidation"] += 1
        resolved = await self._resolve_candidates(candidates)
        async with self.lock.hold("consolidate"):
            result = await self.consolidation.execute(
                resolved, dry_run=dry_run, use_llm=use_llm, on_progress=on_progress
            )
        return result.to_dict()

    @with_operation_id
    async def consolidate(
        self,
        dry_run: bool = False,
        threshold: Optional[float] = None,
        max_candidates: Optional[int] = None,
        use_llm: Optional[bool] = None,
        skip_guards: bool = False,
        on_progress: Optional[Callable] = None
    ) -> Dict[str, Any]:
        """Find and execute consolidation candidates under the store lock."""
        self._require_running()
        self.counters["consolidate"] += 1
        if max_candidates is None:
            max_candidates = self.config.consolidation_max_candidates

        async with self.lock.hold("consolidate"):
            try:
                candidates = await self.consolidation.find_candidates(threshold, max_candidates, skip_guards)
            except SimilarityScanError as e:
                logger.error(f"Similarity scan aborted, no candidates this round: {e}")
                self.counters["scan_failures"] += 1
                result = ConsolidationResult(dry_run=dry_run, errors=[str(e)])
                return result.to_dict()

            result = await self.consolidation.execute(
                candidates, dry_run=dry_run, use_llm=use_llm, on_progress=on_progress
            )
        return result.to_dict()

    @with_operation_id
    async def undo_consolidation(self, merged_id: int) -> Dict[str, Any]:
        self._require_running()
        self.counters["undo_consolidation"] += 1
        result = await self.consolidation.undo(merged_id)
        return result.to_dict()

    @with_operation_id
    async def get_consolidation_stats(self, threshold: Optional[float] = None) -> Dict[str, Any]:
        self._require_running()
        try:
            return await self.consolidation.get_consolidation_stats(threshold)
        except SimilarityScanError as e:
            logger.error(f"Similarity scan aborted: {e}")
            self.counters["scan_failures"] += 1
            total = await self.store.count_memories()
            return {
                "total_memories": total,
                "duplicate_pairs": 0,
                "merge_candidates": 0,
                "potential_reduction": 0,
            }

    @with_operation_id
    async def get_consolidation_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        self._require_running()
        return await self.consolidation.get_consolidation_history(limit)

    # =========================================================================
    # Links
    # =========================================================================

    @with_operation_id
    async def enrich_existing_links(
        self,
        force: bool = False,
        limit: Optional[int] = None,
        batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        self._require_running()
        self.counters["enrich_existing_links"] += 1
        result = await self.classifier.enrich_existing_links(force=force, limit=limit, batch_size=batch_size)
        return result.to_dict()

    @with_operation_id
    async def enrich_memory_links(self, memory_id: int) -> Dict[str, Any]:
        self._require_running()
        enriched = await self.classifier.enrich_memory_links(memory_id)
        return {"memory_id": memory_id, "enriched": enriched}

    @with_operation_id
    async def create_auto_links(
        self,
        memory_id: int,
        threshold: Optional[float] = None,
        max_links: Optional[int] = None
    ) -> Dict[str, Any]:
        self._require_running()
        created = await self.linker.create_auto_links(memory_id, threshold, max_links)
        return {"memory_id": memory_id, "links_created": created}

    @with_operation_id
    async def create_proximity_links(
        self,
        min_cooccurrence: Optional[int] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        self._require_running()
        return await self.linker.create_proximity_links(min_cooccurrence, dry_run)

    # =========================================================================
    # Analytics
    # =========================================================================

    @with_operation_id
    async def detect_communities(
        self,
        max_iterations: Optional[int] = None,
        min_community_size: Optional[int] = None,
        tag_prefix: Optional[str] = None,
        seed: Optional[int] = None
    ) -> Dict[str, Any]:
        self._require_running()
        result = await self.communities.detect_communities(max_iterations, min_community_size, tag_prefix, seed)
        return result.to_dict()

    @with_operation_id
    async def update_centrality_cache(self) -> Dict[str, Any]:
        self._require_running()
        return await self.centrality.update_centrality_cache()

    async def apply_centrality_boost(
        self,
        results: List[Dict[str, Any]],
        boost_weight: Optional[float] = None,
        enabled: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        self._require_running()
        return await self.centrality.apply_centrality_boost(results, boost_weight, enabled)

    @with_operation_id
    async def get_graph_stats(self) -> Dict[str, Any]:
        self._require_running()
        return await self.store.get_graph_stats()

    # =========================================================================
    # Maintenance
    # =========================================================================

    @with_operation_id
    async def graph_cleanup(
        self,
        prune_threshold: Optional[float] = None,
        orphan_threshold: Optional[float] = None,
        orphan_max_links: Optional[int] = None,
        skip_enrich: bool = False,
        skip_orphans: bool = False,
        skip_finalize: bool = False,
        dry_run: bool = False,
        on_progress: Optional[Callable[[str, str], None]] = None
    ) -> Dict[str, Any]:
        """Run the maintenance pipeline under the store lock."""
        self._require_running()
        self.counters["graph_cleanup"] += 1
        async with self.lock.hold("graph_cleanup"):
            result = await self.maintenance.graph_cleanup(
                prune_threshold=prune_threshold,
                orphan_threshold=orphan_threshold,
                orphan_max_links=orphan_max_links,
                skip_enrich=skip_enrich,
                skip_orphans=skip_orphans,
                skip_finalize=skip_finalize,
                dry_run=dry_run,
                on_progress=on_progress
            )
        return result.to_dict()

    def get_lock_status(self) -> Dict[str, Any]:
        self._require_running()
        return self.lock.get_lock_status()
