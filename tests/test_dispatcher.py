"""
Tests for message dispatch: DMs, group triggers, intents, membership events,
payment offers and transaction references.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from conftest import (
    AGENT_INBOX,
    OTHER_ADDRESS,
    SENDER_ADDRESS,
    SENDER_INBOX,
    USDC,
    Harness,
    make_member,
    make_message,
    make_transfer_log,
)
from xbtify_agent import constants
from xbtify_agent.codecs import (
    ContentTypeActions,
    ContentTypeGroupUpdated,
    ContentTypeIntent,
    ContentTypeReaction,
    ContentTypeReply,
    ContentTypeText,
    ContentTypeTransactionReference,
    ContentTypeWalletSendCalls,
    IntentCodec,
)
from xbtify_agent.dispatcher import main_menu
from xbtify_agent.events import GROUP, MESSAGE
from xbtify_agent.types import (
    ActionsContent,
    Answer,
    DecodedMessage,
    GroupUpdated,
    Inbox,
    Intent,
    PaymentRequest,
    Reaction,
    TransactionReceipt,
    TransactionReference,
    TransportEvent,
)

TX = "0x" + "ab" * 32


async def _deliver(h: Harness, message: DecodedMessage) -> None:
    await h.dispatcher.handle_message_event(TransportEvent(type=MESSAGE, data={"message": message}))


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _replies(conversation: Any) -> list[Any]:
    return [r.content for r in conversation.sent_of(ContentTypeReply)]


def _dm_text(text: str, id: str = "msg-1") -> DecodedMessage:
    return make_message(text, ContentTypeText, conversation_id="dm-1", id=id)


async def _open_dm(h: Harness) -> Any:
    """Create the DM conversation and get past the first-contact welcome."""
    dm = h.dm()
    await _deliver(h, _dm_text("hello", id="first"))
    dm.sent.clear()
    return dm


def _intent(action_id: str, conversation_id: str = "dm-1", id: str = "intent-1") -> DecodedMessage:
    return make_message(Intent(id="help", action_id=action_id), ContentTypeIntent, conversation_id=conversation_id, id=id)


def _payment_answer() -> Answer:
    return Answer(payment_request=PaymentRequest(wallet_address=SENDER_ADDRESS, text="Pay to clone"))


# ============================================================
#  Filtering
# ============================================================


@pytest.mark.asyncio
async def test_self_empty_and_reaction_messages_are_ignored(harness: Harness) -> None:
    """Nothing is sent or stored for messages that never warrant a response."""
    dm = harness.dm()

    await _deliver(harness, make_message("hello", ContentTypeText, sender=AGENT_INBOX, conversation_id="dm-1"))
    await _deliver(harness, make_message("   ", ContentTypeText, conversation_id="dm-1"))
    await _deliver(harness, make_message(None, ContentTypeText, conversation_id="dm-1"))
    await _deliver(
        harness,
        make_message(Reaction(reference="x", content="👍"), ContentTypeReaction, conversation_id="dm-1"),
    )

    assert dm.sent == []
    assert await harness.store.get_group_by_conversation_id("dm-1") is None


@pytest.mark.asyncio
async def test_unknown_conversation_is_dropped(harness: Harness) -> None:
    """A message for a conversation the transport cannot find is skipped."""
    await _deliver(harness, make_message("hi", ContentTypeText, conversation_id="ghost"))
    assert await harness.store.get_group_by_conversation_id("ghost") is None


# ============================================================
#  Direct messages
# ============================================================


@pytest.mark.asyncio
async def test_first_dm_gets_welcome_and_menu_only(harness: Harness) -> None:
    """First contact: welcome text plus menu, no answer, mirror row with the sender."""
    dm = harness.dm()

    await _deliver(harness, _dm_text("clone me please"))

    assert dm.sent == [
        (constants.WELCOME_MESSAGE, ContentTypeText),
        (main_menu(constants.DEFAULT_ACTIONS_MESSAGE_2), ContentTypeActions),
    ]
    assert harness.answers.calls == []
    group = await harness.store.get_group_by_conversation_id("dm-1")
    assert group is not None
    members = await harness.store.list_group_members(group.id)
    assert [m.inbox_id for m in members] == [SENDER_INBOX]
    assert harness.registry.session("dm-1").last_sent_message == "dm-1-sent-2"


@pytest.mark.asyncio
async def test_later_dm_is_answered(harness: Harness) -> None:
    """After the welcome, DMs are answered with a thinking reaction and a reply."""
    dm = await _open_dm(harness)

    await _deliver(harness, _dm_text("what can you do?", id="msg-2"))

    assert harness.answers.calls == [("what can you do?", SENDER_ADDRESS)]
    assert dm.sent_of(ContentTypeReaction) == [Reaction(reference="msg-2", action="added", content="👀")]
    assert _replies(dm) == ["gm chad"]


@pytest.mark.asyncio
async def test_dm_without_sender_address_is_dropped(harness: Harness) -> None:
    """No resolvable wallet, no mirror row and no reply."""
    dm = harness.dm()
    harness.transport.addresses.clear()

    await _deliver(harness, _dm_text("hello"))

    assert dm.sent == []
    assert await harness.store.get_group_by_conversation_id("dm-1") is None


@pytest.mark.asyncio
async def test_answer_menu_request_shows_menu(harness: Harness) -> None:
    """A non-clone tool call shows the main menu."""
    dm = await _open_dm(harness)
    harness.answers.answer = Answer(show_menu=True)

    await _deliver(harness, _dm_text("menu pls", id="msg-2"))

    assert dm.sent_of(ContentTypeActions) == [main_menu(constants.DEFAULT_ACTIONS_MESSAGE)]
    assert _replies(dm) == []


@pytest.mark.asyncio
async def test_answer_errors_never_escape(harness: Harness) -> None:
    """A failing answer generator is logged, not raised."""
    dm = await _open_dm(harness)

    async def broken(message: str, sender_address: str) -> Answer:
        raise RuntimeError("model unavailable")

    harness.answers.generate = broken  # type: ignore[method-assign]

    await _deliver(harness, _dm_text("hi again", id="msg-2"))

    assert _replies(dm) == []


# ============================================================
#  Groups
# ============================================================


@pytest.mark.asyncio
async def test_group_mention_is_answered(harness: Harness) -> None:
    """A mention in a group gets an answer and the group is mirrored."""
    group = harness.group(members=[make_member(SENDER_INBOX, SENDER_ADDRESS)])

    await _deliver(harness, make_message("yo @xbtify clone me", ContentTypeText))

    assert harness.answers.calls == [("yo @xbtify clone me", SENDER_ADDRESS)]
    assert _replies(group) == ["gm chad"]
    row = await harness.store.get_group_by_conversation_id("group-1")
    assert row is not None
    assert await harness.store.count_group_members(row.id) == 1


@pytest.mark.asyncio
async def test_group_chatter_is_ignored(harness: Harness) -> None:
    """Without a trigger the agent stays silent."""
    group = harness.group()

    await _deliver(harness, make_message("gm frens", ContentTypeText))

    assert group.sent == []
    assert harness.answers.calls == []


@pytest.mark.asyncio
async def test_group_reply_to_agent_is_answered(harness: Harness) -> None:
    """Replying to the agent's message counts as addressing it."""
    agent_message = make_message("gm", ContentTypeText, sender=AGENT_INBOX, id="agent-msg")
    group = harness.group(history=[agent_message])
    reply = make_message(
        {"reference": "agent-msg", "content": "sounds good"},
        ContentTypeReply,
        id="reply-1",
        parameters={"reference": "agent-msg"},
    )

    await _deliver(harness, reply)

    assert harness.answers.calls == [("sounds good", SENDER_ADDRESS)]
    assert _replies(group) == ["gm chad"]


@pytest.mark.asyncio
async def test_help_keyword_gets_hint_and_menu(harness: Harness) -> None:
    """'/help' without a mention: hint reply plus menu, no answer."""
    group = harness.group()

    await _deliver(harness, make_message("/help", ContentTypeText))

    assert _replies(group) == [constants.HELP_HINT_MESSAGE]
    assert group.sent_of(ContentTypeActions) == [main_menu()]
    assert harness.answers.calls == []


@pytest.mark.asyncio
async def test_agent_removal_deletes_group_mirror(harness: Harness) -> None:
    """A group update removing the agent deletes the mirror row."""
    harness.group(members=[make_member(SENDER_INBOX, SENDER_ADDRESS)])
    await _deliver(harness, make_message("gm", ContentTypeText))
    assert await harness.store.get_group_by_conversation_id("group-1") is not None

    update = GroupUpdated(removed_inboxes=[Inbox(inbox_id=AGENT_INBOX)])
    await _deliver(harness, make_message(update, ContentTypeGroupUpdated, id="update-1"))

    assert await harness.store.get_group_by_conversation_id("group-1") is None


@pytest.mark.asyncio
async def test_added_member_is_mirrored(harness: Harness) -> None:
    """Added inboxes are resolved through the member list."""
    group = harness.group(members=[make_member(SENDER_INBOX, SENDER_ADDRESS)])
    await _deliver(harness, make_message("gm", ContentTypeText))
    group.member_list.append(make_member("other-inbox", OTHER_ADDRESS))

    update = {"addedInboxes": [{"inboxId": "other-inbox"}]}
    await _deliver(harness, make_message(update, ContentTypeGroupUpdated, id="update-1"))

    row = await harness.store.get_group_by_conversation_id("group-1")
    assert row is not None
    assert await harness.store.count_group_members(row.id) == 2
    assert group.sent == []


@pytest.mark.asyncio
async def test_new_group_event_sends_welcome_once(harness: Harness) -> None:
    """Being added to a new group sends the welcome; a known group does not."""
    group = harness.group(members=[make_member(SENDER_INBOX, SENDER_ADDRESS)])
    event = TransportEvent(type=GROUP, data={"conversation": group})

    await harness.dispatcher.handle_group_event(event)
    await harness.dispatcher.handle_group_event(event)

    assert group.sent_of(ContentTypeText) == [constants.WELCOME_MESSAGE]
    assert len(group.sent_of(ContentTypeActions)) == 1


# ============================================================
#  Intents
# ============================================================


@pytest.mark.asyncio
async def test_intent_runs_registered_action(harness: Harness) -> None:
    """Intents are routed to the registry before any DM handling."""
    dm = harness.dm()

    await _deliver(harness, _intent("start"))

    assert dm.sent_of(ContentTypeText) == [constants.START_MESSAGE]
    # No mirror row: intents bypass the first-contact flow
    assert await harness.store.get_group_by_conversation_id("dm-1") is None


@pytest.mark.asyncio
async def test_encoded_intent_is_decoded(harness: Harness) -> None:
    """Raw envelopes are decoded with the Intent codec."""
    dm = harness.dm()
    encoded = IntentCodec().encode(Intent(id="help", action_id="open-app"))

    await _deliver(harness, make_message(encoded, ContentTypeIntent, conversation_id="dm-1"))

    assert dm.sent_of(ContentTypeText) == ["💸 explore group stats on the app https://xbtify.example"]


@pytest.mark.asyncio
async def test_unknown_intent_reports_action_id(harness: Harness) -> None:
    """Unregistered action ids get an explicit error reply."""
    dm = harness.dm()

    await _deliver(harness, _intent("does-not-exist"))

    assert dm.sent_of(ContentTypeText) == ["❌ Unknown action: does-not-exist"]


@pytest.mark.asyncio
async def test_failing_action_reports_error(harness: Harness) -> None:
    """Handler errors are reported to the user."""
    dm = harness.dm()

    async def boom(ctx: Any, metadata: Any) -> None:
        raise ValueError("bad input")

    harness.registry.register("boom", boom)
    await _deliver(harness, _intent("boom"))

    assert dm.sent_of(ContentTypeText) == ["❌ Error: bad input"]


@pytest.mark.asyncio
async def test_intent_with_empty_action_id_is_dropped(harness: Harness) -> None:
    """A malformed Intent never reaches a handler."""
    dm = harness.dm()

    await _deliver(harness, _intent(""))

    assert dm.sent == []


# ============================================================
#  Payments
# ============================================================


@pytest.mark.asyncio
async def test_payment_offer_arms_watcher_and_confirms(harness: Harness) -> None:
    """Offering the transfer arms a watcher that confirms the live payment."""
    dm = await _open_dm(harness)
    harness.answers.answer = _payment_answer()

    await _deliver(harness, _dm_text("clone me", id="msg-2"))

    [offer] = dm.sent_of(ContentTypeActions)
    assert offer.description == "Pay to clone"
    assert offer.actions[0].id in harness.registry
    assert harness.verifier.is_watching(SENDER_ADDRESS)

    harness.chain.block = 101
    harness.chain.logs.append(make_transfer_log(block=101))
    await _eventually(lambda: constants.PAYMENT_RECEIVED_MESSAGE in dm.sent_of(ContentTypeText))

    await _eventually(lambda: harness.verifier.active_watches == 0)
    user = await harness.store.get_user_by_wallet_address(SENDER_ADDRESS)
    assert user is not None and user.has_paid


@pytest.mark.asyncio
async def test_second_offer_does_not_arm_twice(harness: Harness) -> None:
    """One watcher per sender."""
    await _open_dm(harness)
    harness.answers.answer = _payment_answer()

    await _deliver(harness, _dm_text("clone me", id="msg-2"))
    await _deliver(harness, _dm_text("clone me now", id="msg-3"))

    assert harness.verifier.active_watches == 1


@pytest.mark.asyncio
async def test_rejected_live_payment_is_reported(harness: Harness) -> None:
    """A too-small transfer ends the watch with a rejection message."""
    dm = await _open_dm(harness)
    harness.answers.answer = _payment_answer()
    await _deliver(harness, _dm_text("clone me", id="msg-2"))

    harness.chain.block = 101
    harness.chain.logs.append(make_transfer_log(value=1, block=101))

    await _eventually(lambda: any(t.startswith("❌ I couldn't verify") for t in dm.sent_of(ContentTypeText)))
    assert await harness.store.is_tx_hash_used(TX) is False


@pytest.mark.asyncio
async def test_clone_action_offers_payment(harness: Harness) -> None:
    """The menu's create action goes straight to the payment offer."""
    dm = harness.dm()

    await _deliver(harness, _intent("xbtify_create"))

    [offer] = dm.sent_of(ContentTypeActions)
    assert offer.description == "Confirm your clone"
    assert harness.verifier.is_watching(SENDER_ADDRESS)


@pytest.mark.asyncio
async def test_transfer_action_sends_wallet_calls(harness: Harness) -> None:
    """Tapping the transfer button sends the USDC transfer call."""
    dm = harness.dm()
    await _deliver(harness, _intent("xbtify_create"))
    [offer] = dm.sent_of(ContentTypeActions)

    await _deliver(harness, _intent(offer.actions[0].id, id="intent-2"))

    [calls] = dm.sent_of(ContentTypeWalletSendCalls)
    assert calls.from_address == SENDER_ADDRESS
    assert calls.chain_id == "0x2105"
    assert calls.calls[0].to == USDC
    assert calls.calls[0].metadata.amount == "0.01"
    assert calls.calls[0].metadata.hostname == "xbtify.example"


@pytest.mark.asyncio
async def test_transfer_button_is_single_use(harness: Harness) -> None:
    """A second tap on the same offer does not send a second transfer call."""
    dm = harness.dm()
    await _deliver(harness, _intent("xbtify_create"))
    [offer] = dm.sent_of(ContentTypeActions)
    transfer_id = offer.actions[0].id

    await _deliver(harness, _intent(transfer_id, id="intent-2"))
    await _deliver(harness, _intent(transfer_id, id="intent-3"))

    assert len(dm.sent_of(ContentTypeWalletSendCalls)) == 1
    assert dm.sent_of(ContentTypeText) == [f"❌ Unknown action: {transfer_id}"]
    assert transfer_id not in harness.registry


@pytest.mark.asyncio
async def test_transfer_action_checks_balances(harness: Harness) -> None:
    """Insufficient USDC or ETH is reported instead of sending calls."""
    dm = harness.dm()
    await _deliver(harness, _intent("xbtify_create"))
    harness.chain.token_balance = harness.chain.token_balance.model_copy(update={"balance_raw": 100})
    [first] = dm.sent_of(ContentTypeActions)
    await _deliver(harness, _intent(first.actions[0].id, id="intent-2"))

    # Each tap uses up its button, so ask again
    harness.chain.eth_balance = 0
    await _deliver(harness, _intent("xbtify_create", id="intent-3"))
    second = dm.sent_of(ContentTypeActions)[-1]
    await _deliver(harness, _intent(second.actions[0].id, id="intent-4"))

    assert dm.sent_of(ContentTypeText) == [
        "❌ User does not have enough balance",
        "❌ User does not have enough ETH on chain 8453",
    ]
    assert dm.sent_of(ContentTypeWalletSendCalls) == []


def _reference(id: str = "ref-1") -> DecodedMessage:
    return make_message(
        TransactionReference(network_id="0x2105", reference=TX),
        ContentTypeTransactionReference,
        conversation_id="dm-1",
        id=id,
    )


@pytest.mark.asyncio
async def test_transaction_reference_is_verified(harness: Harness) -> None:
    """A transaction reference is checked through the receipt and confirmed."""
    dm = await _open_dm(harness)
    harness.chain.receipts[TX] = TransactionReceipt(transaction_hash=TX, status=1, logs=[make_transfer_log()])

    await _deliver(harness, _reference())

    assert dm.sent_of(ContentTypeText) == [constants.PAYMENT_RECEIVED_MESSAGE]
    assert await harness.store.is_tx_hash_used(TX)


@pytest.mark.asyncio
async def test_repeated_reference_by_payer_is_silent(harness: Harness) -> None:
    """The payer re-sending their own reference gets no second message."""
    dm = await _open_dm(harness)
    harness.chain.receipts[TX] = TransactionReceipt(transaction_hash=TX, status=1, logs=[make_transfer_log()])

    await _deliver(harness, _reference("ref-1"))
    await _deliver(harness, _reference("ref-2"))

    assert dm.sent_of(ContentTypeText) == [constants.PAYMENT_RECEIVED_MESSAGE]


@pytest.mark.asyncio
async def test_reference_to_unknown_transaction_is_rejected(harness: Harness) -> None:
    """Unknown hashes are reported back to the user."""
    dm = await _open_dm(harness)

    await _deliver(harness, _reference())

    assert dm.sent_of(ContentTypeText) == [
        constants.PAYMENT_REJECTED_MESSAGE.format(reason="transaction not found")
    ]


@pytest.mark.asyncio
async def test_reference_cancels_pending_watch(harness: Harness) -> None:
    """A transaction reference replaces the live watcher for that sender."""
    dm = await _open_dm(harness)
    harness.answers.answer = _payment_answer()
    await _deliver(harness, _dm_text("clone me", id="msg-2"))
    assert harness.verifier.is_watching(SENDER_ADDRESS)
    harness.chain.receipts[TX] = TransactionReceipt(transaction_hash=TX, status=1, logs=[make_transfer_log()])

    await _deliver(harness, _reference())

    await _eventually(lambda: harness.verifier.active_watches == 0)
    assert dm.sent_of(ContentTypeText) == [constants.PAYMENT_RECEIVED_MESSAGE]


def test_main_menu_contents() -> None:
    """The main menu offers clone creation and the app link."""
    menu = main_menu()
    assert isinstance(menu, ActionsContent)
    assert menu.id == "help"
    assert [(a.id, a.label) for a in menu.actions] == [
        ("xbtify_create", "🤖 Create your XBT"),
        ("open-app", "🦊 Open App"),
    ]
