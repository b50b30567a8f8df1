from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from memochat.db.base import Base
from memochat.utils.time_utils import utc_now


class MemoryRecordRow(Base):
    """Encrypted-at-rest user memory; plaintext is never stored here."""

    __tablename__ = "memory_records"
    __table_args__ = (Index("ix_memory_records_user", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    storage_pointer: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class MemoryBlob(Base):
    """Ciphertext addressed by a memory record's storage pointer."""

    __tablename__ = "memory_blobs"

    storage_pointer: Mapped[str] = mapped_column(String, primary_key=True)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class MemoryEmbedding(Base):
    """Vector payload associated with a memory record."""

    __tablename__ = "memory_embeddings"
    __table_args__ = (
        UniqueConstraint("memory_id", name="uq_memory_embedding_memory"),
        Index("ix_memory_embedding_memory", "memory_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    memory_id: Mapped[str] = mapped_column(
        String, ForeignKey("memory_records.id"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    dim: Mapped[int] = mapped_column(Integer, nullable=False)
    vector_json: Mapped[str] = mapped_column(Text, nullable=False)
    vector_norm: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ChatTurnRow(Base):
    """One message of a chat session, user or assistant."""

    __tablename__ = "chat_turns"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_chat_turn_session_seq"),
        Index("ix_chat_turns_session_time", "session_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_user: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class PersonaProfileRow(Base):
    """Running OCEAN profile stored as Beta(alpha, beta) per trait."""

    __tablename__ = "persona_profiles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    traits_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    evidence_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    onboarding_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    onboarding_reliability: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    last_reinforced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class RewardTransaction(Base):
    """Reward ledger entry."""

    __tablename__ = "reward_transactions"
    __table_args__ = (Index("ix_reward_user_kind_time", "user_id", "kind", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
