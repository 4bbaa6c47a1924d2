"""Persistent cache tier row.

The row is authoritative: the in-memory LRU and the similarity index are
rebuilt from it. ``response`` is an immutable snapshot of the
CompletionResult; only ``hit_count`` / ``last_accessed`` change after insert.
"""

from sqlalchemy import Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON, TypeDecorator

from provider_gateway.db.base import Base


class VectorAsText(TypeDecorator):
    """Store embedding vectors as TEXT in ``[0.1,0.2,...]`` format.

    Serialises Python lists/arrays on write, deserialises back to a list of
    floats on read.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        # Accept list, tuple, or numpy array
        return "[" + ",".join(str(float(v)) for v in value) + "]"

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip("[] ")
            if not stripped:
                return []
            return [float(v) for v in stripped.split(",")]
        return list(value)


class CachedResponse(Base):
    """A cached completion keyed by request fingerprint."""

    __tablename__ = "cache_entries"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    normalized_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(VectorAsText, nullable=True)
    response: Mapped[dict] = mapped_column(JSON, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)  # epoch seconds
    ttl_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    hit_count: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed: Mapped[float | None] = mapped_column(Float, nullable=True)
