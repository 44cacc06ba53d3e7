"""
Shared fixtures: an on-disk sqlite store per test and hand-written fakes
for the transport, the chain and the outbound integrations.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import to_checksum_address

from xbtify_agent import constants
from xbtify_agent.actions import ActionRegistry
from xbtify_agent.config import AgentConfig
from xbtify_agent.dispatcher import MessageDispatcher
from xbtify_agent.erc20 import TRANSFER_TOPIC, address_topic
from xbtify_agent.membership import MembershipReconciler
from xbtify_agent.payments import PaymentVerifier
from xbtify_agent.store import Store
from xbtify_agent.types import (
    Answer,
    ContentTypeId,
    ConversationKind,
    DecodedMessage,
    FeeEstimate,
    GroupMemberInfo,
    Identifier,
    PaymentRequest,
    TokenBalance,
    TransactionReceipt,
    TransportEvent,
)

AGENT_KEY = "0x" + "11" * 32
AGENT_ADDRESS = Account.from_key(AGENT_KEY).address
AGENT_INBOX = "agent-inbox"

SENDER_INBOX = "sender-inbox"
SENDER_ADDRESS = to_checksum_address("0x" + "aa" * 20)
OTHER_ADDRESS = to_checksum_address("0x" + "bb" * 20)
USDC = constants.BASE_USDC_ADDRESS


# ============================================================
#  Fakes
# ============================================================


class FakeConversation:
    def __init__(
        self,
        id: str,
        kind: ConversationKind = ConversationKind.GROUP,
        members: list[GroupMemberInfo] | None = None,
        history: list[DecodedMessage] | None = None,
        name: str | None = None,
        description: str | None = None,
        image_url: str | None = None,
        peer_inbox_id: str | None = None,
    ) -> None:
        self.id = id
        self.kind = kind
        self.name = name
        self.description = description
        self.image_url = image_url
        self.peer_inbox_id = peer_inbox_id
        self.member_list = members or []
        self.history = history or []
        self.sent: list[tuple[Any, ContentTypeId | None]] = []

    async def send(self, content: Any, content_type: ContentTypeId | None = None) -> Any:
        self.sent.append((content, content_type))
        return f"{self.id}-sent-{len(self.sent)}"

    async def messages(self) -> list[DecodedMessage]:
        return list(self.history)

    async def members(self) -> list[GroupMemberInfo]:
        return list(self.member_list)

    def sent_of(self, content_type: ContentTypeId) -> list[Any]:
        return [c for c, ct in self.sent if ct is not None and ct.same_as(content_type)]


class FakeTransport:
    def __init__(self, inbox_id: str = AGENT_INBOX, address: str | None = AGENT_ADDRESS) -> None:
        self.inbox_id = inbox_id
        self.address = address
        self.addresses: dict[str, str] = {}
        self.conversations: dict[str, FakeConversation] = {}
        self.dms: dict[str, FakeConversation] = {}
        self.synced = 0
        self._queue: asyncio.Queue[TransportEvent | None] = asyncio.Queue()

    def push(self, event: TransportEvent | None) -> None:
        self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def get_conversation_by_id(self, conversation_id: str) -> FakeConversation | None:
        return self.conversations.get(conversation_id)

    async def get_address_for_inbox(self, inbox_id: str) -> str | None:
        return self.addresses.get(inbox_id)

    async def get_dm_by_inbox_id(self, inbox_id: str) -> FakeConversation | None:
        return self.dms.get(inbox_id)

    async def new_dm(self, inbox_id: str) -> FakeConversation:
        dm = FakeConversation(f"dm-{inbox_id}", ConversationKind.DM, peer_inbox_id=inbox_id)
        self.dms[inbox_id] = dm
        return dm

    async def sync(self) -> None:
        self.synced += 1


class FakeChain:
    def __init__(self) -> None:
        self.block = 100
        self.logs: list[dict[str, Any]] = []
        self.receipts: dict[str, TransactionReceipt] = {}
        self.token_balance = TokenBalance(balance_raw=5_000_000, decimals=6, symbol="USDC")
        self.eth_balance = 10**18
        self.fees = FeeEstimate(max_fee_per_gas=10**9, max_priority_fee_per_gas=10**8)
        self.log_queries = 0

    async def block_number(self) -> int:
        return self.block

    async def get_transfer_logs(
        self,
        token_address: str,
        from_block: int,
        to_block: int | str = "latest",
        sender: str | None = None,
        recipient: str | None = None,
    ) -> list[dict[str, Any]]:
        self.log_queries += 1
        upper = self.block if to_block == "latest" else int(to_block)
        matched = []
        for log in self.logs:
            if not from_block <= log["blockNumber"] <= upper:
                continue
            if sender and log["topics"][1] != address_topic(sender):
                continue
            if recipient and log["topics"][2] != address_topic(recipient):
                continue
            matched.append(log)
        return matched

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        return self.receipts.get(tx_hash.lower())

    async def get_token_balance(self, token_address: str, owner: str) -> TokenBalance:
        return self.token_balance

    async def get_eth_balance(self, owner: str) -> int:
        return self.eth_balance

    async def estimate_fees(self) -> FeeEstimate:
        return self.fees


class FakeInitializer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def initialize(self, user: Any, wallet_address: str) -> bool:
        self.calls.append((user.id, wallet_address))
        if self.fail:
            raise RuntimeError("backend unavailable")
        return True

    async def close(self) -> None:
        pass


class FakeAnswers:
    def __init__(self, answer: Answer | None = None) -> None:
        self.answer = answer or Answer(text="gm chad")
        self.calls: list[tuple[str, str]] = []

    async def generate(self, message: str, sender_address: str) -> Answer:
        self.calls.append((message, sender_address))
        return self.answer

    async def create_clone_request(self, wallet_address: str) -> PaymentRequest:
        return PaymentRequest(wallet_address=wallet_address, text="Confirm your clone")


# ============================================================
#  Builders
# ============================================================


def make_transfer_log(
    sender: str = SENDER_ADDRESS,
    recipient: str = AGENT_ADDRESS,
    value: int = 10_000,
    tx_hash: str = "0x" + "ab" * 32,
    token: str = USDC,
    block: int = 100,
) -> dict[str, Any]:
    """Raw Transfer log as returned by ``eth_getLogs``."""
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(recipient)],
        "data": "0x" + abi_encode(["uint256"], [value]).hex(),
        "transactionHash": tx_hash,
        "blockNumber": block,
    }


def make_member(inbox_id: str, address: str | None) -> GroupMemberInfo:
    identifiers = [Identifier(identifier=address)] if address else []
    return GroupMemberInfo(inbox_id=inbox_id, account_identifiers=identifiers)


def make_message(
    content: Any,
    content_type: ContentTypeId | None = None,
    sender: str = SENDER_INBOX,
    conversation_id: str = "group-1",
    id: str = "msg-1",
    **kwargs: Any,
) -> DecodedMessage:
    return DecodedMessage(
        id=id,
        conversation_id=conversation_id,
        sender_inbox_id=sender,
        content_type=content_type,
        content=content,
        **kwargs,
    )


# ============================================================
#  Fixtures
# ============================================================


@pytest.fixture
def config() -> AgentConfig:
    return AgentConfig(
        app_url="https://xbtify.example",
        api_key="secret",
        wallet_key=AGENT_KEY,
        openai_api_key="sk-test",
        payment_poll_interval=0.01,
        payment_watch_timeout=1.0,
    )


@pytest_asyncio.fixture
async def store(tmp_path: Any) -> AsyncIterator[Store]:
    s = Store(f"sqlite+aiosqlite:///{tmp_path / 'xbtify.db'}")
    await s.create_all()
    yield s
    await s.close()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def initializer() -> FakeInitializer:
    return FakeInitializer()


@pytest_asyncio.fixture
async def verifier(
    store: Store, chain: FakeChain, initializer: FakeInitializer
) -> AsyncIterator[PaymentVerifier]:
    v = PaymentVerifier(
        chain,
        store,
        initializer,  # type: ignore[arg-type]
        token_address=USDC,
        token_decimals=6,
        min_amount=Decimal("0.01"),
        poll_interval=0.01,
        default_timeout=1.0,
    )
    yield v
    await v.close()


@pytest.fixture
def reconciler(store: Store) -> MembershipReconciler:
    return MembershipReconciler(store, AGENT_INBOX, AGENT_ADDRESS)


@dataclass
class Harness:
    transport: FakeTransport
    dispatcher: MessageDispatcher
    registry: ActionRegistry
    answers: FakeAnswers
    chain: FakeChain
    store: Store
    verifier: PaymentVerifier
    initializer: FakeInitializer

    def group(self, conversation_id: str = "group-1", **kwargs: Any) -> FakeConversation:
        conversation = FakeConversation(conversation_id, ConversationKind.GROUP, **kwargs)
        self.transport.conversations[conversation_id] = conversation
        return conversation

    def dm(self, conversation_id: str = "dm-1", peer: str = SENDER_INBOX) -> FakeConversation:
        conversation = FakeConversation(conversation_id, ConversationKind.DM, peer_inbox_id=peer)
        self.transport.conversations[conversation_id] = conversation
        return conversation


@pytest_asyncio.fixture
async def harness(
    config: AgentConfig,
    store: Store,
    chain: FakeChain,
    initializer: FakeInitializer,
    verifier: PaymentVerifier,
    reconciler: MembershipReconciler,
) -> Harness:
    transport = FakeTransport()
    transport.addresses[SENDER_INBOX] = SENDER_ADDRESS
    registry = ActionRegistry()
    answers = FakeAnswers()
    dispatcher = MessageDispatcher(
        transport,  # type: ignore[arg-type]
        config,
        registry,
        store,
        reconciler,
        answers,  # type: ignore[arg-type]
        verifier,
        chain,
    )
    dispatcher.register_default_actions()
    return Harness(transport, dispatcher, registry, answers, chain, store, verifier, initializer)
