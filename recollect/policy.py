"""
Candidate Policy - decide what to do with a pair of similar memories.

Pure: no storage access, no side effects.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .models import Memory, ensure_utc

# Similarity bands
DUPLICATE_THRESHOLD = 0.95
MERGE_THRESHOLD = 0.85

# Quality gap that decides which duplicate survives
QUALITY_MARGIN = 0.1

# Missing quality counts as neutral
DEFAULT_QUALITY = 0.5

DELETE_DUPLICATE = "delete_duplicate"
MERGE = "merge"
KEEP_BOTH = "keep_both"


@dataclass(frozen=True)
class ActionDecision:
    action: str
    reason: str
    keep_id: Optional[int] = None


def _quality(memory: Memory) -> float:
    return memory.quality_score if memory.quality_score is not None else DEFAULT_QUALITY


def _created(memory: Memory) -> datetime:
    return ensure_utc(memory.created_at) or datetime.min.replace(tzinfo=timezone.utc)


def determine_action(memory1: Memory, memory2: Memory, similarity: float) -> ActionDecision:
    """
    Classify a candidate pair.

    > 0.95: near-identical, keep the higher-quality one (clear margin) or
    the newer one. 0.85-0.95: if one contains the other keep the longer,
    otherwise merge. Below that both stay.
    """
    if similarity > DUPLICATE_THRESHOLD:
        q1, q2 = _quality(memory1), _quality(memory2)
        if abs(q1 - q2) > QUALITY_MARGIN:
            keep = memory1 if q1 > q2 else memory2
            return ActionDecision(
                DELETE_DUPLICATE,
                f"Near-identical ({similarity:.3f}); keeping higher quality #{keep.id}",
                keep.id
            )

        keep = memory1 if _created(memory1) > _created(memory2) else memory2
        return ActionDecision(
            DELETE_DUPLICATE,
            f"Near-identical ({similarity:.3f}); keeping newer #{keep.id}",
            keep.id
        )

    if similarity > MERGE_THRESHOLD:
        c1 = (memory1.content or "").lower()
        c2 = (memory2.content or "").lower()
        if c1 in c2 or c2 in c1:
            keep = memory1 if len(memory1.content or "") > len(memory2.content or "") else memory2
            return ActionDecision(
                DELETE_DUPLICATE,
                f"One contains the other ({similarity:.3f}); keeping longer #{keep.id}",
                keep.id
            )

        return ActionDecision(
            MERGE,
            f"Overlapping content ({similarity:.3f}); merging #{memory1.id} and #{memory2.id}"
        )

    return ActionDecision(
        KEEP_BOTH,
        f"Related but distinct ({similarity:.3f}); keeping #{memory1.id} and #{memory2.id}"
    )
