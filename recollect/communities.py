"""
Community Detection - label propagation over the live memory graph.

Groups memories into thematic communities from graph structure alone and
records the assignment as a community tag on each member, so retrieval
can filter or expand by community.

Algorithm:
1. Every node starts with its own id as label
2. Each pass visits nodes in a seeded random order; a node adopts the
   label with the largest total edge weight among its neighbours
   (ties go to the lowest label)
3. Stop when a pass changes nothing or the iteration cap is hit
"""

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import Settings, settings
from .store import MemoryStore

logger = logging.getLogger(__name__)

Adjacency = Dict[int, List[Tuple[int, float]]]


@dataclass
class Community:
    id: int
    members: List[int]

    @property
    def size(self) -> int:
        return len(self.members)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "size": self.size, "members": list(self.members)}


@dataclass
class CommunityResult:
    communities: List[Community] = field(default_factory=list)
    isolated: int = 0
    iterations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "communities": [c.to_dict() for c in self.communities],
            "isolated": self.isolated,
            "iterations": self.iterations,
        }


def build_adjacency_list(links: Iterable) -> Adjacency:
    """Undirected adjacency: each link contributes an edge both ways."""
    adjacency: Adjacency = defaultdict(list)
    for link in links:
        weight = link.weight if link.weight is not None else 1.0
        adjacency[link.source_id].append((link.target_id, weight))
        adjacency[link.target_id].append((link.source_id, weight))
    return dict(adjacency)


def label_propagation(
    adjacency: Adjacency,
    max_iterations: int = 100,
    seed: int = 42
) -> Tuple[Dict[int, int], int]:
    """
    Run weighted label propagation.

    Returns:
        (labels by node, number of passes actually run)
    """
    rng = random.Random(seed)
    nodes = sorted(adjacency)
    labels = {node: node for node in nodes}

    iterations = 0
    for _ in range(max_iterations):
        iterations += 1
        changed = False
        rng.shuffle(nodes)

        for node in nodes:
            neighbors = adjacency.get(node)
            if not neighbors:
                continue

            weights: Dict[int, float] = defaultdict(float)
            for neighbor, weight in neighbors:
                weights[labels[neighbor]] += weight

            best = min(weights, key=lambda label: (-weights[label], label))
            if best != labels[node]:
                labels[node] = best
                changed = True

        if not changed:
            break

    return labels, iterations


def renumber_communities(labels: Dict[int, int]) -> Dict[int, int]:
    """Renumber labels 0..N, largest group first (ties by smallest member)."""
    groups: Dict[int, List[int]] = defaultdict(list)
    for node, label in labels.items():
        groups[label].append(node)

    ordered = sorted(groups.values(), key=lambda members: (-len(members), min(members)))
    renumbered = {}
    for community_id, members in enumerate(ordered):
        for node in members:
            renumbered[node] = community_id
    return renumbered


class CommunityDetector:
    """Detects communities and keeps community tags current."""

    def __init__(self, store: MemoryStore, config: Optional[Settings] = None):
        self.store = store
        self.config = config or settings

    async def detect_communities(
        self,
        max_iterations: Optional[int] = None,
        min_community_size: Optional[int] = None,
        tag_prefix: Optional[str] = None,
        seed: Optional[int] = None
    ) -> CommunityResult:
        """
        Detect communities in the live graph and update member tags.

        Members of communities smaller than min_community_size count as
        isolated and carry no community tag.
        """
        max_iterations = max_iterations or self.config.community_max_iterations
        min_community_size = min_community_size or self.config.community_min_size
        tag_prefix = tag_prefix or self.config.community_tag_prefix
        seed = self.config.community_seed if seed is None else seed

        links = await self.store.get_all_links(live_only=True)
        adjacency = build_adjacency_list(links)

        result = CommunityResult()
        assignment: Dict[int, int] = {}

        if adjacency:
            raw, result.iterations = label_propagation(adjacency, max_iterations, seed)
            labels = renumber_communities(raw)

            groups: Dict[int, List[int]] = defaultdict(list)
            for node, community_id in labels.items():
                groups[community_id].append(node)

            for community_id in sorted(groups):
                members = sorted(groups[community_id])
                if len(members) < min_community_size:
                    result.isolated += len(members)
                    continue
                result.communities.append(Community(id=community_id, members=members))
                for node in members:
                    assignment[node] = community_id

            result.communities.sort(key=lambda c: (-c.size, c.id))

        await self._update_tags(assignment, tag_prefix)

        logger.info(
            f"Detected {len(result.communities)} communities "
            f"({result.isolated} isolated, {result.iterations} iterations)"
        )
        return result

    async def _update_tags(self, assignment: Dict[int, int], tag_prefix: str) -> int:
        """Replace community tags on live memories; untouched tags stay as they are."""
        marker = f"{tag_prefix}:"
        memories = await self.store.get_live_memories(with_embeddings=False)

        updated = 0
        for memory in memories:
            tags = list(memory.tags or [])
            kept = [t for t in tags if not t.startswith(marker)]
            if memory.id in assignment:
                kept.append(f"{marker}{assignment[memory.id]}")
            if sorted(set(kept)) != sorted(set(tags)):
                await self.store.update_memory_tags(memory.id, kept)
                updated += 1
        return updated
