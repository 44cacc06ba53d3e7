"""SQLAlchemy ORM models for the XBTify relational mirror.

Users, their wallets, the group mirror (one row per transport conversation,
direct messages included), group membership, and the ledger of accepted
payment transactions. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def generate_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "user"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    username: Mapped[Optional[str]] = mapped_column(Text)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    inbox_id: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    # Non-empty once the paid feature is unlocked
    paid_tx_hash: Mapped[str] = mapped_column(Text, default="")

    farcaster_fid: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    farcaster_username: Mapped[Optional[str]] = mapped_column(Text)
    farcaster_display_name: Mapped[Optional[str]] = mapped_column(Text)
    farcaster_avatar_url: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    wallets: Mapped[list[Wallet]] = relationship(
        back_populates="user", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def has_paid(self) -> bool:
        return bool(self.paid_tx_hash)


class Wallet(Base):
    __tablename__ = "wallet"

    # Checksummed
    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"))
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    user: Mapped[User] = relationship(back_populates="wallets")

    __table_args__ = (Index("idx_wallet_user_id", "user_id"),)


class Group(Base):
    """Mirror of one transport conversation (a DM is a one-member group)."""

    __tablename__ = "group"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("conversation_id", name="group_conversation_id_unique_idx"),
    )


class GroupMember(Base):
    __tablename__ = "group_member"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    group_id: Mapped[str] = mapped_column(ForeignKey("group.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="group_member_group_user_unique_idx"),
    )


class Payment(Base):
    """Accepted payment transactions; a hash appears here at most once."""

    __tablename__ = "payment"

    # Lowercase 0x-prefixed hash
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"))
    amount_raw: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
