"""
Graph Maintenance - the cleanup pipeline run over the live graph.

Steps, in order:
1. load         collect live links and the weak similar_to ones
2. prune        delete unenriched similar_to links below the prune threshold
3. enrich       classify the remaining unenriched similar_to links
4. orphans      auto-link memories with no live links (lower threshold)
5. communities  label propagation + community tags
6. centrality   rebuild the degree centrality cache

Running the pipeline twice in a row leaves the graph unchanged the second
time: orphan links are classified as soon as they are created (or stored
as settled when enrichment is skipped), and classified links are never
pruned.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from .centrality import CentralityManager
from .communities import CommunityDetector
from .config import Settings, settings
from .linking import GraphLinker
from .relations import RelationClassifier
from .store import MemoryStore

logger = logging.getLogger(__name__)

CleanupProgress = Callable[[str, str], None]


@dataclass
class CleanupResult:
    pruned: int = 0
    enriched: int = 0
    orphans_connected: int = 0
    communities_detected: int = 0
    centrality_updated: int = 0
    dry_run: bool = False
    # Fields that are estimates rather than real counts (dry run only)
    estimated: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class GraphMaintenance:
    """
    Orchestrates the graph cleanup pipeline.

    Usage:
        maintenance = GraphMaintenance(store, linker, classifier, detector, centrality)
        result = await maintenance.graph_cleanup(dry_run=True)
    """

    def __init__(
        self,
        store: MemoryStore,
        linker: GraphLinker,
        classifier: RelationClassifier,
        communities: CommunityDetector,
        centrality: CentralityManager,
        config: Optional[Settings] = None
    ):
        self.store = store
        self.linker = linker
        self.classifier = classifier
        self.communities = communities
        self.centrality = centrality
        self.config = config or settings

    async def graph_cleanup(
        self,
        prune_threshold: Optional[float] = None,
        orphan_threshold: Optional[float] = None,
        orphan_max_links: Optional[int] = None,
        skip_enrich: bool = False,
        skip_orphans: bool = False,
        skip_finalize: bool = False,
        dry_run: bool = False,
        on_progress: Optional[CleanupProgress] = None
    ) -> CleanupResult:
        prune_threshold = self.config.prune_threshold if prune_threshold is None else prune_threshold
        orphan_threshold = self.config.orphan_threshold if orphan_threshold is None else orphan_threshold
        orphan_max_links = self.config.orphan_max_links if orphan_max_links is None else orphan_max_links

        def progress(step: str, detail: str) -> None:
            logger.debug(f"[{step}] {detail}")
            if on_progress:
                on_progress(step, detail)

        result = CleanupResult(dry_run=dry_run)

        # Step 1: load
        progress("load", "Loading live memory links...")
        links = await self.store.get_all_links(live_only=True)
        weak = [
            link for link in links
            if link.relation == "similar_to" and not link.llm_enriched
            and (link.weight or 0.0) < prune_threshold
        ]
        progress("load", f"Found {len(weak)} weak similar_to links (of {len(links)} total)")

        # Step 2: prune
        if weak:
            progress("prune", f"Pruning {len(weak)} links below threshold {prune_threshold}...")
            if dry_run:
                result.pruned = len(weak)
            else:
                result.pruned = await self.store.delete_links_by_ids([link.id for link in weak])
            progress("prune", f"Pruned {result.pruned} links")

        # Step 3: enrich
        if not skip_enrich:
            progress("enrich", "Classifying remaining similar_to links...")
            if dry_run:
                result.enriched = sum(
                    1 for link in links
                    if link.relation == "similar_to" and not link.llm_enriched
                    and (link.weight or 0.0) >= prune_threshold
                )
                result.estimated.append("enriched")
                progress("enrich", f"Would enrich ~{result.enriched} links")
            else:
                enrich = await self.classifier.enrich_existing_links()
                result.enriched = enrich.enriched
                progress("enrich", f"Enriched {enrich.enriched}, failed {enrich.failed}, skipped {enrich.skipped}")

        # Step 4: orphans
        if not skip_orphans:
            progress("orphans", "Finding isolated memories...")
            orphan_ids = await self.store.find_isolated_memory_ids()
            progress("orphans", f"Found {len(orphan_ids)} isolated memories")

            if orphan_ids:
                if dry_run:
                    result.orphans_connected = len(orphan_ids)
                    result.estimated.append("orphans_connected")
                else:
                    await self._connect_orphans(
                        orphan_ids, orphan_threshold, orphan_max_links, skip_enrich, result
                    )
                progress("orphans", f"Connected {result.orphans_connected} of {len(orphan_ids)} orphans")

        # Steps 5 & 6: communities and centrality
        if not skip_finalize:
            progress("communities", "Detecting communities...")
            if dry_run:
                result.communities_detected = -1
                progress("communities", "Skipped (dry-run)")
            else:
                detected = await self.communities.detect_communities()
                result.communities_detected = len(detected.communities)
                progress("communities", f"Detected {result.communities_detected} communities ({detected.isolated} isolated)")

            progress("centrality", "Updating centrality scores...")
            if dry_run:
                result.centrality_updated = -1
                progress("centrality", "Skipped (dry-run)")
            else:
                updated = await self.centrality.update_centrality_cache()
                result.centrality_updated = updated["updated"]
                progress("centrality", f"Updated {result.centrality_updated} centrality scores")

        logger.info(
            f"Graph cleanup {'(dry run) ' if dry_run else ''}complete: "
            f"pruned={result.pruned} enriched={result.enriched} "
            f"orphans={result.orphans_connected} communities={result.communities_detected} "
            f"centrality={result.centrality_updated} errors={len(result.errors)}"
        )
        return result

    async def _connect_orphans(
        self,
        orphan_ids: List[int],
        threshold: float,
        max_links: int,
        skip_enrich: bool,
        result: CleanupResult
    ) -> None:
        corpus = await self.store.get_live_memories(with_embeddings=True)

        for orphan_id in orphan_ids:
            try:
                linked = await self.linker.create_auto_links(
                    orphan_id, threshold, max_links, corpus=corpus, llm_enriched=skip_enrich
                )
                if linked == 0:
                    continue
                result.orphans_connected += 1
                if not skip_enrich:
                    result.enriched += await self.classifier.enrich_memory_links(orphan_id)
            except Exception as e:
                logger.warning(f"Failed to connect orphan #{orphan_id}: {e}")
                result.errors.append(f"Orphan #{orphan_id}: {e}")
