"""
Interactive content codecs (Intent / Actions) and content type routing.

Both custom types are UTF-8 JSON bodies inside the transport's generic
:class:`~xbtify_agent.types.EncodedContent` envelope::

    codec = IntentCodec()
    encoded = codec.encode(Intent(id="menu-1", action_id="start"))
    intent = codec.decode(encoded)
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from xbtify_agent.errors import ProtocolViolation, UnsupportedEncoding
from xbtify_agent.types import ActionsContent, ContentTypeId, EncodedContent, Intent

logger = logging.getLogger(__name__)

UTF8 = "UTF-8"

# Custom interactive types
ContentTypeIntent = ContentTypeId(authority_id="coinbase.com", type_id="intent")
ContentTypeActions = ContentTypeId(authority_id="coinbase.com", type_id="actions")

# Standard types owned by the transport
ContentTypeText = ContentTypeId(authority_id="xmtp.org", type_id="text")
ContentTypeReply = ContentTypeId(authority_id="xmtp.org", type_id="reply")
ContentTypeGroupUpdated = ContentTypeId(authority_id="xmtp.org", type_id="group_updated")
ContentTypeReaction = ContentTypeId(authority_id="xmtp.org", type_id="reaction")
ContentTypeRemoteAttachment = ContentTypeId(
    authority_id="xmtp.org", type_id="remoteStaticAttachment"
)
ContentTypeWalletSendCalls = ContentTypeId(authority_id="xmtp.org", type_id="walletSendCalls")
ContentTypeTransactionReference = ContentTypeId(
    authority_id="xmtp.org", type_id="transactionReference"
)


class ContentKind(str, Enum):
    """Closed set of content kinds the dispatcher knows how to route."""

    TEXT = "text"
    REPLY = "reply"
    INTENT = "intent"
    ACTIONS = "actions"
    GROUP_UPDATED = "group_updated"
    REACTION = "reaction"
    REMOTE_ATTACHMENT = "remote_attachment"
    WALLET_SEND_CALLS = "wallet_send_calls"
    TRANSACTION_REFERENCE = "transaction_reference"
    UNKNOWN = "unknown"


_KINDS: list[tuple[ContentTypeId, ContentKind]] = [
    (ContentTypeText, ContentKind.TEXT),
    (ContentTypeReply, ContentKind.REPLY),
    (ContentTypeIntent, ContentKind.INTENT),
    (ContentTypeActions, ContentKind.ACTIONS),
    (ContentTypeGroupUpdated, ContentKind.GROUP_UPDATED),
    (ContentTypeReaction, ContentKind.REACTION),
    (ContentTypeRemoteAttachment, ContentKind.REMOTE_ATTACHMENT),
    (ContentTypeWalletSendCalls, ContentKind.WALLET_SEND_CALLS),
    (ContentTypeTransactionReference, ContentKind.TRANSACTION_REFERENCE),
]


def content_kind(content_type: ContentTypeId | None) -> ContentKind:
    """Map a content type id onto the closed :class:`ContentKind` set.

    A missing content type is treated as plain text.
    """
    if content_type is None:
        return ContentKind.TEXT
    for known, kind in _KINDS:
        if known.same_as(content_type):
            return kind
    return ContentKind.UNKNOWN


T = TypeVar("T", bound=BaseModel)


class JsonContentCodec(Generic[T]):
    """Base for codecs whose payload is a pydantic model serialised as JSON."""

    content_type: ContentTypeId
    model: type[T]
    label: str = "content"

    def encode(self, content: T) -> EncodedContent:
        self.validate(content)
        body = content.model_dump(by_alias=True, exclude_none=True)
        return EncodedContent(
            type=self.content_type,
            parameters={"encoding": UTF8},
            content=json.dumps(body, separators=(",", ":")).encode("utf-8"),
            fallback=self.fallback(content),
        )

    def decode(self, encoded: EncodedContent) -> T:
        encoding = encoded.parameters.get("encoding")
        if encoding and encoding != UTF8:
            raise UnsupportedEncoding(encoding)

        try:
            raw: Any = json.loads(encoded.content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolViolation(f"Failed to decode {self.label} content: {e}") from e

        try:
            content = self.model.model_validate(raw)
        except ValidationError as e:
            raise ProtocolViolation(
                f"Failed to parse {self.label} content: {e.error_count()} validation error(s)",
                {"errors": e.errors(include_url=False)},
            ) from e

        self.validate(content)
        return content

    def validate(self, content: T) -> None:
        raise NotImplementedError

    def fallback(self, content: T) -> str:
        raise NotImplementedError

    def should_push(self) -> bool:
        return True


class IntentCodec(JsonContentCodec[Intent]):
    content_type = ContentTypeIntent
    model = Intent
    label = "Intent"

    def validate(self, content: Intent) -> None:
        if not isinstance(content.id, str) or not content.id:
            raise ProtocolViolation("Intent.id is required and must be a string")
        if not isinstance(content.action_id, str) or not content.action_id:
            raise ProtocolViolation("Intent.actionId is required and must be a string")

    def fallback(self, content: Intent) -> str:
        return f"Action: {getattr(content, 'action_id', '')} for {getattr(content, 'id', '')}"


class ActionsCodec(JsonContentCodec[ActionsContent]):
    content_type = ContentTypeActions
    model = ActionsContent
    label = "Actions"

    def validate(self, content: ActionsContent) -> None:
        if not content.id:
            raise ProtocolViolation("Actions.id is required")
        if not content.description:
            raise ProtocolViolation("Actions.description is required")
        if not content.actions:
            raise ProtocolViolation("Actions.actions must contain at least one action")
        seen: set[str] = set()
        for action in content.actions:
            if not action.id or not action.label:
                raise ProtocolViolation("Action.id and Action.label are required")
            if action.id in seen:
                raise ProtocolViolation(f"Duplicate action id: {action.id}")
            seen.add(action.id)

    def fallback(self, content: ActionsContent) -> str:
        lines = [getattr(content, "description", "") or ""]
        for i, action in enumerate(getattr(content, "actions", None) or [], start=1):
            lines.append(f"[{i}] {getattr(action, 'label', '')}")
        return "\n".join(lines) + "\n\nReply with the number to select"


class CodecRegistry:
    """Routes encoded envelopes to the codec registered for their type."""

    def __init__(self, codecs: list[JsonContentCodec[Any]] | None = None) -> None:
        self._codecs: dict[tuple[str, str], JsonContentCodec[Any]] = {}
        for codec in codecs if codecs is not None else [IntentCodec(), ActionsCodec()]:
            self.register(codec)

    def register(self, codec: JsonContentCodec[Any]) -> None:
        ct = codec.content_type
        self._codecs[(ct.authority_id, ct.type_id)] = codec

    def get(self, content_type: ContentTypeId) -> JsonContentCodec[Any] | None:
        return self._codecs.get((content_type.authority_id, content_type.type_id))

    def encode(self, content: BaseModel, content_type: ContentTypeId) -> EncodedContent:
        codec = self.get(content_type)
        if codec is None:
            raise ProtocolViolation(f"No codec registered for {content_type}")
        return codec.encode(content)

    def decode(self, encoded: EncodedContent) -> Any:
        codec = self.get(encoded.type)
        if codec is None:
            raise ProtocolViolation(f"No codec registered for {encoded.type}")
        return codec.decode(encoded)
