"""
LLM Relation Classification - turn raw similar_to edges into typed relations.

Embedding similarity only says two memories are close. The classifier asks
the LLM what the relationship actually is (caused_by, leads_to,
contradicts, ...) and upgrades the link. Classification never raises:
anything that goes wrong yields similar_to with confidence 0.
"""

import json
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import Settings, settings
from .models import LINK_RELATIONS, Memory, MemoryLink
from .store import MemoryStore

logger = logging.getLogger(__name__)

# Relations the classifier may assign; supersedes is reserved for replacements
CLASSIFIABLE_RELATIONS = tuple(r for r in LINK_RELATIONS if r != "supersedes")

FALLBACK_RELATION = "similar_to"

CLASSIFY_SYSTEM = """Given memories from a knowledge base, determine their relationship.

Choose ONE relation from: caused_by, leads_to, contradicts, implements, references, related, similar_to

Rules:
- caused_by: A was caused by or resulted from B
- leads_to: A leads to or enables B
- contradicts: A and B conflict or disagree
- implements: A is an implementation/action based on B (a decision)
- references: A mentions or cites B
- related: connected but none of the above fit
- similar_to: nearly identical content (keep only if truly duplicate-like)"""

CLASSIFY_PROMPT_SINGLE = """Memory A (type: {type_a}): {content_a}

Memory B (type: {type_b}): {content_b}

Reply with ONLY valid JSON: {{"relation": "...", "confidence": 0.0-1.0}}"""

CLASSIFY_PROMPT_BATCH = """{pairs}

Reply with ONLY a valid JSON array: [{{"pair": 1, "relation": "...", "confidence": 0.0-1.0}}, ...]"""

_OBJECT_RE = re.compile(r"\{[^{}]+\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


@dataclass(frozen=True)
class RelationResult:
    relation: str
    confidence: float


@dataclass
class EnrichResult:
    enriched: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


FALLBACK = RelationResult(FALLBACK_RELATION, 0.0)


def validate_relation(value: Any) -> str:
    """Map an LLM label onto an assignable relation (unknown -> related)."""
    normalized = str(value or "").strip().lower()
    if normalized in CLASSIFIABLE_RELATIONS:
        return normalized
    return "related"


def clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return max(0.0, min(1.0, float(value)))


def parse_classify_response(response: str) -> RelationResult:
    match = _OBJECT_RE.search(response or "")
    if not match:
        return FALLBACK
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return FALLBACK
    if not isinstance(parsed, dict):
        return FALLBACK
    return RelationResult(validate_relation(parsed.get("relation")), clamp_confidence(parsed.get("confidence")))


def parse_batch_response(response: str, count: int) -> List[RelationResult]:
    """Match results to pairs by their "pair" number, falling back to position."""
    match = _ARRAY_RE.search(response or "")
    if not match:
        return [FALLBACK] * count
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return [FALLBACK] * count
    if not isinstance(parsed, list):
        return [FALLBACK] * count

    entries = [p for p in parsed if isinstance(p, dict)]
    by_number = {e.get("pair"): e for e in entries if isinstance(e.get("pair"), int)}

    results = []
    for index in range(count):
        entry = by_number.get(index + 1)
        if entry is None and index < len(entries):
            entry = entries[index]
        if entry is None:
            results.append(FALLBACK)
            continue
        results.append(RelationResult(validate_relation(entry.get("relation")), clamp_confidence(entry.get("confidence"))))
    return results


class RelationClassifier:
    """
    Classifies memory pairs and enriches similar_to links.

    Usage:
        classifier = RelationClassifier(store, llm_backend)
        result = await classifier.enrich_existing_links(limit=50)
    """

    def __init__(self, store: MemoryStore, llm=None, config: Optional[Settings] = None):
        self.store = store
        self.llm = llm
        self.config = config or settings

    async def _ask(self, prompt: str, max_tokens: int) -> str:
        return await self.llm.complete(
            prompt,
            max_tokens=max_tokens,
            timeout=self.config.llm_timeout,
            system_prompt=CLASSIFY_SYSTEM,
            temperature=0.1
        )

    async def classify_relation(self, memory_a: Memory, memory_b: Memory) -> RelationResult:
        """Classify how memory_a relates to memory_b."""
        if self.llm is None:
            return FALLBACK

        limit = self.config.classify_max_chars
        prompt = CLASSIFY_PROMPT_SINGLE.format(
            type_a=memory_a.type or "observation",
            content_a=(memory_a.content or "")[:limit],
            type_b=memory_b.type or "observation",
            content_b=(memory_b.content or "")[:limit],
        )
        try:
            response = await self._ask(prompt, max_tokens=100)
        except Exception as e:
            logger.debug(f"Relation classification failed: {e}")
            return FALLBACK
        return parse_classify_response(response)

    async def classify_relations_batch(self, pairs: Sequence[Tuple[Memory, Memory]]) -> List[RelationResult]:
        """Classify several pairs with one LLM call."""
        if not pairs:
            return []
        if self.llm is None:
            return [FALLBACK] * len(pairs)

        limit = self.config.classify_batch_max_chars
        blocks = []
        for index, (a, b) in enumerate(pairs, 1):
            blocks.append(
                f"Pair {index}:\n"
                f"  Memory A (type: {a.type or 'observation'}): {(a.content or '')[:limit]}\n"
                f"  Memory B (type: {b.type or 'observation'}): {(b.content or '')[:limit]}"
            )
        prompt = CLASSIFY_PROMPT_BATCH.format(pairs="\n\n".join(blocks))

        try:
            response = await self._ask(prompt, max_tokens=50 * len(pairs))
        except Exception as e:
            logger.debug(f"Batch relation classification failed: {e}")
            return [FALLBACK] * len(pairs)
        return parse_batch_response(response, len(pairs))

    # =========================================================================
    # Enrichment
    # =========================================================================

    async def enrich_existing_links(
        self,
        force: bool = False,
        limit: Optional[int] = None,
        batch_size: Optional[int] = None
    ) -> EnrichResult:
        """Classify live similar_to links (only unenriched ones unless force)."""
        links = await self.store.get_all_links(live_only=True, relation="similar_to")
        if not force:
            links = [link for link in links if not link.llm_enriched]
        if limit:
            links = links[:limit]
        return await self._enrich(links, batch_size or self.config.enrich_batch_size)

    async def enrich_memory_links(self, memory_id: int) -> int:
        """Classify one memory's own unenriched outgoing similar_to links."""
        links = await self.store.get_memory_links(memory_id)
        pending = [
            link for link in links["outgoing"]
            if link.relation == "similar_to" and not link.llm_enriched
        ]
        if not pending:
            return 0
        result = await self._enrich(pending, len(pending))
        return result.enriched

    async def _enrich(self, links: List[MemoryLink], batch_size: int) -> EnrichResult:
        result = EnrichResult()
        if not links:
            return result

        memory_ids = set()
        for link in links:
            memory_ids.update((link.source_id, link.target_id))
        memories = await self.store.get_memories(memory_ids)

        for start in range(0, len(links), batch_size):
            batch = links[start:start + batch_size]

            work = []
            for link in batch:
                a = memories.get(link.source_id)
                b = memories.get(link.target_id)
                if a is None or b is None:
                    result.skipped += 1
                    continue
                work.append((link, a, b))

            if not work:
                continue

            if len(work) == 1:
                _, a, b = work[0]
                classified = [await self.classify_relation(a, b)]
            else:
                classified = await self.classify_relations_batch([(a, b) for _, a, b in work])

            for (link, _, _), relation in zip(work, classified):
                if relation.confidence > 0:
                    await self._apply(link, relation)
                    result.enriched += 1
                else:
                    await self.store.update_link(link.id, llm_enriched=True)
                    result.failed += 1

        logger.info(f"Link enrichment: {result.enriched} enriched, {result.failed} failed, {result.skipped} skipped")
        return result

    async def _apply(self, link: MemoryLink, relation: RelationResult) -> None:
        if relation.relation != link.relation:
            clash = await self.store.find_link(link.source_id, link.target_id, relation.relation)
            if clash is not None:
                # Upgrading would duplicate an existing edge
                await self.store.update_link(link.id, llm_enriched=True)
                return

        await self.store.update_link(
            link.id,
            relation=relation.relation,
            weight=relation.confidence,
            llm_enriched=True
        )
