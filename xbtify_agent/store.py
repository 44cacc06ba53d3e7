"""
Async relational store for the XBTify mirror.

Uniqueness-constrained inserts use the dialect's ``ON CONFLICT DO NOTHING``
so concurrent handlers racing on the same row converge instead of failing.
SQLite (``aiosqlite``) and PostgreSQL (``asyncpg``) are supported.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Sequence

from eth_utils import to_checksum_address
from sqlalchemy import delete, event, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from xbtify_agent.models import Base, Group, GroupMember, Payment, User, Wallet
from xbtify_agent.types import FarcasterUser

logger = logging.getLogger(__name__)


def _sqlite_connect(dbapi_connection: Any, connection_record: Any) -> None:
    # Let SQLAlchemy emit BEGIN itself (see _sqlite_begin)
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_begin(conn: Any) -> None:
    # Take the write lock up front so concurrent writers queue on the
    # busy timeout instead of failing with "database is locked"
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class Store:
    """Persistence for users, wallets, group mirrors, members and payments."""

    def __init__(self, database_url: str | None = None, engine: AsyncEngine | None = None) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_async_engine(database_url)
        self._engine = engine
        if engine.dialect.name == "sqlite":
            event.listen(engine.sync_engine, "connect", _sqlite_connect)
            event.listen(engine.sync_engine, "begin", _sqlite_begin)
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    def _insert(self, model: Any) -> Any:
        if self._engine.dialect.name == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    async def _scalar(self, stmt: Any) -> Any:
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def _scalars(self, stmt: Any) -> list[Any]:
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return list(result.scalars().unique().all())

    # -- Groups -------------------------------------------------------------

    async def get_group(self, group_id: str) -> Group | None:
        return await self._scalar(select(Group).where(Group.id == group_id))

    async def get_group_by_conversation_id(self, conversation_id: str) -> Group | None:
        return await self._scalar(select(Group).where(Group.conversation_id == conversation_id))

    async def get_or_create_group(
        self,
        conversation_id: str,
        name: str | None = None,
        description: str | None = None,
        image_url: str | None = None,
    ) -> tuple[Group, bool]:
        """Return the mirror row for a conversation, creating it if missing.

        Safe under concurrent calls for the same conversation: exactly one
        caller sees ``created=True``, the others re-read the winner's row.
        """
        existing = await self.get_group_by_conversation_id(conversation_id)
        if existing is not None:
            return existing, False

        stmt = (
            self._insert(Group)
            .values(
                conversation_id=conversation_id,
                name=name,
                description=description,
                image_url=image_url,
            )
            .on_conflict_do_nothing(index_elements=["conversation_id"])
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        created = result.rowcount == 1

        group = await self.get_group_by_conversation_id(conversation_id)
        if group is None:
            raise RuntimeError(f"Group for conversation {conversation_id} vanished after insert")
        return group, created

    async def update_group(self, group_id: str, **fields: Any) -> Group | None:
        allowed = {"name", "description", "image_url"}
        values = {k: v for k, v in fields.items() if k in allowed}
        if values:
            async with self._engine.begin() as conn:
                await conn.execute(update(Group).where(Group.id == group_id).values(**values))
        return await self.get_group(group_id)

    async def delete_group(self, group_id: str) -> None:
        """Delete a mirror row together with its membership rows."""
        async with self._engine.begin() as conn:
            await conn.execute(delete(GroupMember).where(GroupMember.group_id == group_id))
            await conn.execute(delete(Group).where(Group.id == group_id))

    # -- Members ------------------------------------------------------------

    async def add_group_members(
        self,
        group_id: str,
        members: Sequence[tuple[str | None, str]],
    ) -> int:
        """Add ``(inbox_id, address)`` pairs as members; returns rows inserted.

        Users are created as needed. Existing memberships are left alone.
        """
        inserted = 0
        for inbox_id, address in members:
            user = await self.get_or_create_user(inbox_id, address)
            stmt = (
                self._insert(GroupMember)
                .values(group_id=group_id, user_id=user.id)
                .on_conflict_do_nothing(index_elements=["group_id", "user_id"])
            )
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
            inserted += max(result.rowcount, 0)
        return inserted

    async def remove_group_members_by_inbox_ids(self, group_id: str, inbox_ids: Sequence[str]) -> int:
        if not inbox_ids:
            return 0
        users = await self.get_users_by_inbox_ids(inbox_ids)
        user_ids = [u.id for u in users]
        if not user_ids:
            return 0
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(GroupMember).where(
                    GroupMember.group_id == group_id,
                    GroupMember.user_id.in_(user_ids),
                )
            )
        return max(result.rowcount, 0)

    async def list_group_members(self, group_id: str) -> list[User]:
        stmt = (
            select(User)
            .join(GroupMember, GroupMember.user_id == User.id)
            .where(GroupMember.group_id == group_id)
        )
        return await self._scalars(stmt)

    async def count_group_members(self, group_id: str) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count()).select_from(GroupMember).where(GroupMember.group_id == group_id)
            )
            return int(result.scalar_one())

    # -- Users --------------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        return await self._scalar(select(User).where(User.id == user_id))

    async def get_user_by_inbox_id(self, inbox_id: str) -> User | None:
        return await self._scalar(select(User).where(User.inbox_id == inbox_id))

    async def get_users_by_inbox_ids(self, inbox_ids: Sequence[str]) -> list[User]:
        if not inbox_ids:
            return []
        return await self._scalars(select(User).where(User.inbox_id.in_(list(inbox_ids))))

    async def get_user_by_fid(self, fid: int) -> User | None:
        if fid < 0:
            return None
        return await self._scalar(select(User).where(User.farcaster_fid == fid))

    async def get_user_by_wallet_address(self, address: str) -> User | None:
        stmt = (
            select(User)
            .join(Wallet, Wallet.user_id == User.id)
            .where(Wallet.address == to_checksum_address(address))
        )
        return await self._scalar(stmt)

    async def get_or_create_user(self, inbox_id: str | None, address: str) -> User:
        """Resolve a user by inbox id or wallet, creating user and wallet rows."""
        checksummed = to_checksum_address(address)

        user = await self.get_user_by_inbox_id(inbox_id) if inbox_id else None
        if user is None:
            user = await self.get_user_by_wallet_address(checksummed)
            if user is not None and inbox_id and not user.inbox_id:
                async with self._engine.begin() as conn:
                    await conn.execute(
                        update(User).where(User.id == user.id).values(inbox_id=inbox_id)
                    )
                return await self.get_user(user.id) or user

        if user is None:
            insert_user = self._insert(User).values(inbox_id=inbox_id)
            if inbox_id:
                insert_user = insert_user.on_conflict_do_nothing(index_elements=["inbox_id"])
            async with self._engine.begin() as conn:
                result = await conn.execute(insert_user.returning(User.id))
                row = result.first()
            if row is not None:
                user_id = row[0]
            else:
                # Lost the race to a concurrent insert for the same inbox
                existing = await self.get_user_by_inbox_id(inbox_id or "")
                if existing is None:
                    raise RuntimeError(f"User for inbox {inbox_id} vanished after insert")
                user_id = existing.id
            await self._add_wallets(user_id, [checksummed], primary=checksummed)

            owner = await self.get_user_by_wallet_address(checksummed)
            if owner is not None and owner.id != user_id and not inbox_id:
                # Another caller created a user for this wallet first
                async with self._engine.begin() as conn:
                    await conn.execute(delete(User).where(User.id == user_id))
                return owner
            created = await self.get_user(user_id)
            assert created is not None
            return created

        if not any(w.address == checksummed for w in user.wallets):
            await self._add_wallets(user.id, [checksummed])
            return await self.get_user(user.id) or user
        return user

    async def _add_wallets(self, user_id: str, addresses: Sequence[str], primary: str | None = None) -> None:
        async with self._engine.begin() as conn:
            for address in addresses:
                await conn.execute(
                    self._insert(Wallet)
                    .values(address=address, user_id=user_id, is_primary=address == primary)
                    .on_conflict_do_nothing(index_elements=["address"])
                )

    async def attach_farcaster_profile(self, user_id: str, profile: FarcasterUser) -> User | None:
        """Copy a Farcaster profile onto a user and register its verified wallets."""
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        farcaster_fid=profile.fid,
                        farcaster_username=profile.username,
                        farcaster_display_name=profile.display_name,
                        farcaster_avatar_url=profile.pfp_url,
                        username=profile.username,
                        avatar_url=profile.pfp_url,
                    )
                )
        except IntegrityError:
            logger.warning("Farcaster fid %s already belongs to another user", profile.fid)
            return await self.get_user(user_id)

        verified = [to_checksum_address(a) for a in profile.verified_addresses]
        if verified:
            await self._add_wallets(user_id, verified)
        return await self.get_user(user_id)

    # -- Payments -----------------------------------------------------------

    async def is_tx_hash_used(self, tx_hash: str) -> bool:
        tx = tx_hash.lower()
        if await self._scalar(select(Payment.tx_hash).where(Payment.tx_hash == tx)) is not None:
            return True
        return await self._scalar(select(User.id).where(User.paid_tx_hash == tx).limit(1)) is not None

    async def claim_payment(
        self,
        user_id: str,
        tx_hash: str,
        amount_raw: int,
        on_claimed: Callable[[], Awaitable[None]] | None = None,
    ) -> bool:
        """Record ``tx_hash`` as paid by ``user_id``.

        Returns ``False`` when the hash was already claimed. ``on_claimed``
        runs inside the same transaction; if it raises, nothing is recorded
        and the exception propagates.
        """
        tx = tx_hash.lower()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                self._insert(Payment)
                .values(tx_hash=tx, user_id=user_id, amount_raw=str(amount_raw))
                .on_conflict_do_nothing(index_elements=["tx_hash"])
            )
            if result.rowcount != 1:
                return False
            await conn.execute(update(User).where(User.id == user_id).values(paid_tx_hash=tx))
            if on_claimed is not None:
                await on_claimed()
        return True
