"""
Transport boundary for the XBTify agent.

The messaging transport is an external collaborator. It is described here
as two protocols (:class:`Transport` and :class:`Conversation`) and wrapped,
per inbound message, in a :class:`MessageContext` that exposes the reply and
send primitives handlers need.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol

from xbtify_agent.codecs import (
    ContentKind,
    ContentTypeReaction,
    ContentTypeReply,
    ContentTypeText,
    content_kind,
)
from xbtify_agent.types import (
    ContentTypeId,
    ConversationKind,
    DecodedMessage,
    GroupMemberInfo,
    Reaction,
    Reply,
    TransportEvent,
)

logger = logging.getLogger(__name__)

THINKING_EMOJI = "👀"


class Conversation(Protocol):
    """A direct or group conversation owned by the transport.

    Groups expose ``name``, ``description`` and ``image_url``; direct
    conversations expose ``peer_inbox_id``.
    """

    id: str
    kind: ConversationKind
    name: str | None
    description: str | None
    image_url: str | None
    peer_inbox_id: str | None

    async def send(self, content: Any, content_type: ContentTypeId | None = None) -> Any: ...

    async def messages(self) -> list[DecodedMessage]: ...

    async def members(self) -> list[GroupMemberInfo]: ...


class Transport(Protocol):
    """The agent's client on the messaging network."""

    inbox_id: str
    address: str | None

    def events(self) -> AsyncIterator[TransportEvent]: ...

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation | None: ...

    async def get_address_for_inbox(self, inbox_id: str) -> str | None: ...

    async def get_dm_by_inbox_id(self, inbox_id: str) -> Conversation | None: ...

    async def new_dm(self, inbox_id: str) -> Conversation: ...

    async def sync(self) -> None: ...


class MessageContext:
    """Reply/send primitives bound to one inbound message."""

    def __init__(
        self,
        message: DecodedMessage,
        conversation: Conversation,
        transport: Transport,
    ) -> None:
        self.message = message
        self.conversation = conversation
        self.transport = transport

    @property
    def content_kind(self) -> ContentKind:
        return content_kind(self.message.content_type)

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def client_inbox_id(self) -> str:
        return self.transport.inbox_id

    @property
    def client_address(self) -> str | None:
        return self.transport.address

    def is_dm(self) -> bool:
        return self.conversation.kind == ConversationKind.DM

    def is_group(self) -> bool:
        return self.conversation.kind == ConversationKind.GROUP

    def is_reply(self) -> bool:
        return self.content_kind == ContentKind.REPLY

    def is_from_self(self) -> bool:
        return self.message.sender_inbox_id.lower() == self.client_inbox_id.lower()

    async def send(self, content: Any, content_type: ContentTypeId | None = None) -> Any:
        return await self.conversation.send(content, content_type)

    async def send_text(self, text: str) -> Any:
        return await self.conversation.send(text, ContentTypeText)

    async def send_text_reply(self, text: str) -> Any:
        reply = Reply(reference=self.message.id, content=text, content_type=ContentTypeText)
        return await self.conversation.send(reply, ContentTypeReply)

    async def get_sender_address(self) -> str | None:
        """Resolve the sender's wallet address, or ``None`` if unavailable."""
        try:
            return await self.transport.get_address_for_inbox(self.message.sender_inbox_id)
        except Exception:
            logger.warning(
                "Unable to resolve address for inbox %s", self.message.sender_inbox_id, exc_info=True
            )
            return None

    async def history(self) -> list[DecodedMessage]:
        return await self.conversation.messages()


class ThinkingReaction:
    """Adds and removes the 👀 reaction on the message being handled."""

    def __init__(self, ctx: MessageContext, emoji: str = THINKING_EMOJI) -> None:
        self._ctx = ctx
        self._emoji = emoji

    async def add(self) -> None:
        await self._react("added")

    async def remove(self) -> None:
        await self._react("removed")

    async def _react(self, action: str) -> None:
        reaction = Reaction(reference=self._ctx.message.id, action=action, content=self._emoji)
        try:
            await self._ctx.send(reaction, ContentTypeReaction)
        except Exception as e:
            # Best effort, the answer still goes out
            logger.warning("Thinking reaction (%s) failed: %s", action, e)
