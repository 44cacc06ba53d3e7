"""
Pydantic models for the XBTify agent.

Wire payloads keep the transport's camelCase names as aliases; Python code
uses snake_case attributes.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


# ============================================================
#  Content envelopes
# ============================================================


class ContentTypeId(BaseModel):
    """Stable content type identifier (authority + name + version)."""

    authority_id: str = Field(alias="authorityId")
    type_id: str = Field(alias="typeId")
    version_major: int = Field(1, alias="versionMajor")
    version_minor: int = Field(0, alias="versionMinor")

    model_config = {"populate_by_name": True, "frozen": True}

    def __str__(self) -> str:
        return f"{self.authority_id}/{self.type_id}:{self.version_major}.{self.version_minor}"

    def same_as(self, other: ContentTypeId) -> bool:
        return self.authority_id == other.authority_id and self.type_id == other.type_id


class EncodedContent(BaseModel):
    """Generic encoded envelope carried by the transport."""

    type: ContentTypeId
    parameters: dict[str, str] = {}
    content: bytes = b""
    fallback: str | None = None


# ============================================================
#  Interactive content
# ============================================================


ActionStyle = Literal["primary", "secondary", "danger"]


class Intent(BaseModel):
    """A user's selection of one offered action."""

    id: str
    action_id: str = Field(alias="actionId")
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class Action(BaseModel):
    id: str
    label: str
    style: ActionStyle | None = None
    metadata: dict[str, Any] | None = None


class ActionsContent(BaseModel):
    """An offered menu of actions."""

    id: str
    description: str
    actions: list[Action] = []


# ============================================================
#  Standard transport content
# ============================================================


class Reply(BaseModel):
    reference: str
    content: Any = None
    content_type: ContentTypeId | None = Field(None, alias="contentType")

    model_config = {"populate_by_name": True}


class Reaction(BaseModel):
    reference: str
    action: Literal["added", "removed"] = "added"
    content: str
    schema_: str = Field("shortcode", alias="schema")

    model_config = {"populate_by_name": True}


class Inbox(BaseModel):
    inbox_id: str = Field(alias="inboxId")

    model_config = {"populate_by_name": True}


class MetadataFieldChange(BaseModel):
    field_name: str = Field(alias="fieldName")
    old_value: str | None = Field(None, alias="oldValue")
    new_value: str | None = Field(None, alias="newValue")

    model_config = {"populate_by_name": True}


class GroupUpdated(BaseModel):
    """Membership delta carried by one group-update event."""

    initiated_by_inbox_id: str | None = Field(None, alias="initiatedByInboxId")
    added_inboxes: list[Inbox] = Field(default_factory=list, alias="addedInboxes")
    removed_inboxes: list[Inbox] = Field(default_factory=list, alias="removedInboxes")
    metadata_field_changes: list[MetadataFieldChange] = Field(
        default_factory=list, alias="metadataFieldChanges"
    )

    model_config = {"populate_by_name": True}

    @property
    def added_inbox_ids(self) -> list[str]:
        return [i.inbox_id for i in self.added_inboxes]

    @property
    def removed_inbox_ids(self) -> list[str]:
        return [i.inbox_id for i in self.removed_inboxes]

    def changed_field(self, field_name: str) -> MetadataFieldChange | None:
        for change in self.metadata_field_changes:
            if change.field_name == field_name:
                return change
        return None


class TransactionReference(BaseModel):
    """A claimed on-chain transaction, sent by a wallet after paying."""

    namespace: str | None = None
    network_id: str | int = Field(alias="networkId")
    reference: str
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


# ============================================================
#  Wallet send calls
# ============================================================


class WalletCallMetadata(BaseModel):
    description: str
    transaction_type: str = Field("transfer", alias="transactionType")
    currency: str
    amount: str
    decimals: str
    network_id: str = Field(alias="networkId")
    hostname: str | None = None
    favicon_url: str | None = Field(None, alias="faviconUrl")
    title: str | None = None

    model_config = {"populate_by_name": True}


class WalletCall(BaseModel):
    to: str
    data: str
    metadata: WalletCallMetadata


class WalletSendCalls(BaseModel):
    """Versioned wallet-call request for the paid-feature transfer."""

    version: str = "1.0"
    from_address: str = Field(alias="from")
    chain_id: str = Field(alias="chainId")
    capabilities: dict[str, Any] = {}
    calls: list[WalletCall] = []

    model_config = {"populate_by_name": True}


# ============================================================
#  Transport
# ============================================================


class ConversationKind(str, Enum):
    DM = "dm"
    GROUP = "group"


class Identifier(BaseModel):
    identifier: str
    identifier_kind: str = Field("Ethereum", alias="identifierKind")

    model_config = {"populate_by_name": True}


class GroupMemberInfo(BaseModel):
    """Authoritative member entry as reported by the transport."""

    inbox_id: str = Field(alias="inboxId")
    account_identifiers: list[Identifier] = Field(default_factory=list, alias="accountIdentifiers")

    model_config = {"populate_by_name": True}

    @property
    def ethereum_address(self) -> str | None:
        for ident in self.account_identifiers:
            if ident.identifier_kind == "Ethereum":
                return ident.identifier
        return None


class DecodedMessage(BaseModel):
    """One inbound message after the transport decoded its envelope."""

    id: str
    conversation_id: str = Field(alias="conversationId")
    sender_inbox_id: str = Field(alias="senderInboxId")
    content_type: ContentTypeId | None = Field(None, alias="contentType")
    content: Any = None
    fallback: str | None = None
    parameters: dict[str, Any] = {}
    sent_at: str | None = Field(None, alias="sentAt")

    model_config = {"populate_by_name": True}


class TransportEvent(BaseModel):
    """Event delivered by the transport's subscription stream."""

    type: str
    data: dict[str, Any] = {}


# ============================================================
#  Decisions and results
# ============================================================


class TriggerAction(str, Enum):
    IGNORE = "ignore"
    RESPOND = "respond"
    HELP_HINT = "help_hint"


class TriggerDecision(BaseModel):
    action: TriggerAction
    text: str = ""
    is_reply_to_agent: bool = False
    has_trigger: bool = False

    @property
    def should_respond(self) -> bool:
        return self.action == TriggerAction.RESPOND

    @property
    def help_hint(self) -> bool:
        return self.action == TriggerAction.HELP_HINT


class TransferLog(BaseModel):
    """Decoded ERC-20 Transfer event."""

    address: str
    from_address: str
    to_address: str
    value: int
    transaction_hash: str
    block_number: int | None = None


class PaymentResult(BaseModel):
    accepted: bool
    tx_hash: str | None = None
    reason: str | None = None
    amount: Decimal | None = None
    user_id: str | None = None


class FarcasterUser(BaseModel):
    """Subset of a Neynar user profile."""

    fid: int
    username: str | None = None
    display_name: str | None = None
    pfp_url: str | None = None
    verified_addresses: list[str] = []


class PaymentRequest(BaseModel):
    """The answer generator asked the user to pay for the clone."""

    wallet_address: str
    fid: int | None = None
    username: str | None = None
    text: str | None = None


class Answer(BaseModel):
    text: str | None = None
    payment_request: PaymentRequest | None = None
    show_menu: bool = False


class TokenBalance(BaseModel):
    balance_raw: int
    decimals: int
    symbol: str

    @property
    def balance(self) -> Decimal:
        return Decimal(self.balance_raw) / (Decimal(10) ** self.decimals)


class FeeEstimate(BaseModel):
    """EIP-1559 fee estimate, in wei."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int


class TransactionReceipt(BaseModel):
    """The parts of an on-chain receipt the payment verifier reads."""

    transaction_hash: str
    status: int
    from_address: str | None = None
    to_address: str | None = None
    block_number: int | None = None
    logs: list[dict[str, Any]] = []

    @property
    def succeeded(self) -> bool:
        return self.status == 1
