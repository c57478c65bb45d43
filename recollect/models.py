"""
Recollect Models - Schema for memories and the knowledge graph between them.

Tables:
- memories: Stored facts with embeddings; soft-deleted via invalidated_by
- memory_links: Directed, weighted, typed graph edges between memories
- centrality_scores: Cached degree centrality per memory (derived data)
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Boolean, LargeBinary, Float, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone
from typing import List, Optional

from . import vectors

# Closed set of link relations
LINK_RELATIONS = (
    "related",      # Generic relation
    "caused_by",    # A was caused by B
    "leads_to",     # A leads to B
    "similar_to",   # A is similar to B (raw embedding edge)
    "contradicts",  # A contradicts B
    "implements",   # A implements B (decision -> code)
    "supersedes",   # A replaced B (merge / duplicate resolution, undo trail)
    "references",   # A references B
)

# Source tag of memories synthesized by the LLM merge path
SYNTHETIC_MERGE_SOURCE = "consolidation-llm"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class Memory(Base):
    """
    A fact the system has stored.

    A memory with a non-null invalidated_by is logically deleted but kept
    on disk so consolidation can be undone. invalidated_by always points
    at a live memory.
    """
    __tablename__ = "memories"

    id = Column(Integer, primary_key=True, index=True)

    # The actual content
    content = Column(Text, nullable=False)

    # Tags for retrieval (set semantics, stored sorted)
    tags = Column(JSON, default=list)

    # Origin (session id, file path, "consolidation-llm", ...)
    source = Column(String, nullable=True, index=True)

    # Category (observation, decision, learning, ...)
    type = Column(String, default="observation")

    # Stored as packed float32 (bytes)
    embedding = Column(LargeBinary, nullable=True)

    # Quality scoring (0-1) and its breakdown / provenance
    quality_score = Column(Float, nullable=True)
    quality_factors = Column(JSON, nullable=True)

    # Usage tracking
    access_count = Column(Integer, default=0)
    last_accessed = Column(DateTime, nullable=True)

    # Temporal validity window
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)

    # Soft delete: id of the memory that replaced this one
    invalidated_by = Column(Integer, ForeignKey("memories.id", ondelete="SET NULL"), nullable=True, index=True)

    @property
    def is_live(self) -> bool:
        return self.invalidated_by is None

    @property
    def vector(self) -> Optional[List[float]]:
        """Decoded embedding."""
        return vectors.decode(self.embedding)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "tags": list(self.tags or []),
            "source": self.source,
            "type": self.type,
            "quality_score": self.quality_score,
            "quality_factors": self.quality_factors,
            "access_count": self.access_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "invalidated_by": self.invalidated_by,
        }


class MemoryLink(Base):
    """
    Directed relationship edge between two memories.

    Only similar_to edges are pruned or re-classified automatically.
    supersedes edges record replacements and form the undo trail.
    llm_enriched marks edges whose relation has been reviewed by the
    LLM classifier (whether or not it changed the relation).
    """
    __tablename__ = "memory_links"

    id = Column(Integer, primary_key=True, index=True)

    # Source memory (the "from" node)
    source_id = Column(Integer, ForeignKey("memories.id", ondelete="CASCADE"), nullable=False, index=True)

    # Target memory (the "to" node)
    target_id = Column(Integer, ForeignKey("memories.id", ondelete="CASCADE"), nullable=False, index=True)

    relation = Column(String, nullable=False, index=True, default="related")

    # Strength, usually a similarity or classifier confidence in [0, 1]
    weight = Column(Float, default=1.0)

    llm_enriched = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('source_id', 'target_id', 'relation', name='uix_link_pair_relation'),
        Index('ix_memory_links_relation_enriched', 'relation', 'llm_enriched'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relation": self.relation,
            "weight": self.weight,
            "llm_enriched": bool(self.llm_enriched),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CentralityScore(Base):
    """Cached degree centrality, recomputed wholesale by graph analytics."""
    __tablename__ = "centrality_scores"

    memory_id = Column(Integer, ForeignKey("memories.id", ondelete="CASCADE"), primary_key=True)
    degree = Column(Integer, nullable=False, default=0)
    normalized_degree = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
