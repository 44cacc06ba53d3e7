"""
Keeps the relational group mirror in sync with transport membership.

``ensure_group`` / ``ensure_dm`` create the mirror row for a conversation the
first time it is seen. ``reconcile`` applies one group-update delta::

    outcome = await reconciler.reconcile(group, update, await conversation.members())
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Sequence

from xbtify_agent.context import Conversation
from xbtify_agent.models import Group
from xbtify_agent.store import Store
from xbtify_agent.types import GroupMemberInfo, GroupUpdated

logger = logging.getLogger(__name__)

# transport field name -> Group column
METADATA_FIELDS = {
    "group_name": "name",
    "group_description": "description",
    "group_image_url_square": "image_url",
}


class ReconcileOutcome(str, Enum):
    NOOP = "noop"
    UPDATED = "updated"
    DELETED = "deleted"


class MembershipReconciler:
    def __init__(
        self,
        store: Store,
        agent_inbox_id: str,
        agent_address: str | None,
        known_agent_addresses: Iterable[str] = (),
    ) -> None:
        self._store = store
        self.agent_inbox_id = agent_inbox_id
        self.agent_address = agent_address
        self._known_agents = {a.lower() for a in known_agent_addresses}

    def is_agent_inbox(self, inbox_id: str) -> bool:
        return inbox_id.lower() == self.agent_inbox_id.lower()

    def is_excluded_address(self, address: str) -> bool:
        """The agent's own address or another known automated agent."""
        lowered = address.lower()
        if self.agent_address and lowered == self.agent_address.lower():
            return True
        return lowered in self._known_agents

    def resolve_members(
        self,
        inbox_ids: Sequence[str],
        members: Sequence[GroupMemberInfo],
    ) -> list[tuple[str, str]]:
        """Map inbox ids to ``(inbox_id, address)`` through the member list.

        Unresolvable ids, the agent and known agents are dropped.
        """
        by_inbox = {m.inbox_id: m for m in members}
        resolved: list[tuple[str, str]] = []
        for inbox_id in inbox_ids:
            if self.is_agent_inbox(inbox_id):
                continue
            member = by_inbox.get(inbox_id)
            address = member.ethereum_address if member else None
            if not address:
                logger.debug("Skipping inbox %s, no Ethereum address in member list", inbox_id)
                continue
            if self.is_excluded_address(address):
                logger.debug("Skipping known agent %s", address)
                continue
            resolved.append((inbox_id, address))
        return resolved

    async def ensure_group(self, conversation: Conversation) -> tuple[Group, bool]:
        """Get or create the mirror row of a group conversation.

        A new row is seeded with the conversation's current members.
        """
        group, created = await self._store.get_or_create_group(
            conversation.id,
            name=conversation.name,
            description=conversation.description,
            image_url=conversation.image_url,
        )
        if created:
            try:
                members = await conversation.members()
            except Exception as e:
                logger.warning("Unable to list members of %s: %s", conversation.id, e)
                return group, created
            added = await self._store.add_group_members(
                group.id, self.resolve_members([m.inbox_id for m in members], members)
            )
            logger.info("Mirrored new group %s with %d member(s)", group.id, added)
        return group, created

    async def ensure_dm(
        self,
        conversation: Conversation,
        sender_inbox_id: str,
        sender_address: str,
    ) -> tuple[Group, bool]:
        """Get or create the mirror row of a direct conversation (one member)."""
        group, created = await self._store.get_or_create_group(conversation.id)
        if created and not self.is_excluded_address(sender_address):
            await self._store.add_group_members(group.id, [(sender_inbox_id, sender_address)])
            logger.info("Mirrored new DM %s for %s", group.id, sender_address)
        return group, created

    async def reconcile(
        self,
        group: Group,
        update: GroupUpdated,
        members: Sequence[GroupMemberInfo],
    ) -> ReconcileOutcome:
        """Apply one membership delta to the mirror of ``group``."""
        added = update.added_inbox_ids
        removed = update.removed_inbox_ids
        changes = {
            column: update.changed_field(field_name)
            for field_name, column in METADATA_FIELDS.items()
            if update.changed_field(field_name) is not None
        }
        if not added and not removed and not changes:
            return ReconcileOutcome.NOOP

        logger.info(
            "Group %s changed: added=%s removed=%s fields=%s",
            group.id, added, removed, sorted(changes),
        )

        fields = {column: c.new_value for column, c in changes.items() if c and c.new_value is not None}
        if fields:
            await self._store.update_group(group.id, **fields)

        if removed:
            if any(self.is_agent_inbox(inbox_id) for inbox_id in removed):
                await self._store.delete_group(group.id)
                logger.info("Agent removed from group %s, mirror deleted", group.id)
                return ReconcileOutcome.DELETED
            await self._store.remove_group_members_by_inbox_ids(group.id, removed)

        if added:
            to_add = self.resolve_members(added, members)
            if to_add:
                await self._store.add_group_members(group.id, to_add)

        return ReconcileOutcome.UPDATED
