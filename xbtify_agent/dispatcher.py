"""
Routes inbound messages to the right handler.

Intents go to the action registry. Direct messages are mirrored as
one-member groups: the first message gets a welcome and the menu, later
ones get an answer. Group messages first reconcile membership events, then
go through trigger detection. Answers that ask for payment offer the
transfer and arm a payment watcher.

Nothing raised while handling one message escapes :meth:`MessageDispatcher.handle`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from xbtify_agent import constants
from xbtify_agent.actions import (
    ActionBuilder,
    ActionHandler,
    ActionRegistry,
    build_transfer_action,
    send_actions,
)
from xbtify_agent.answers import XBTIFY_CREATE, AnswerGenerator
from xbtify_agent.codecs import (
    ActionsCodec,
    CodecRegistry,
    ContentKind,
    IntentCodec,
    ContentTypeActions,
    ContentTypeText,
    ContentTypeWalletSendCalls,
)
from xbtify_agent.config import AgentConfig
from xbtify_agent.context import Conversation, MessageContext, ThinkingReaction, Transport
from xbtify_agent.erc20 import to_base_units, transfer_erc20_calls
from xbtify_agent.errors import HandlerFailure, ProtocolViolation, ResolutionFailure, UnknownAction
from xbtify_agent.membership import MembershipReconciler
from xbtify_agent.payments import PaymentCallback, PaymentVerifier
from xbtify_agent.store import Store
from xbtify_agent.triggers import (
    DEFAULT_TRIGGER_CONFIG,
    TriggerConfig,
    detect_trigger,
    extract_message_content,
)
from xbtify_agent.types import (
    ActionsContent,
    Answer,
    DecodedMessage,
    EncodedContent,
    GroupUpdated,
    Intent,
    PaymentRequest,
    PaymentResult,
    TransactionReference,
    TransportEvent,
)

logger = logging.getLogger("xbtify.dispatcher")

# Kinds that carry user text worth answering
_ANSWERABLE = {ContentKind.TEXT, ContentKind.REPLY}

# Watch outcomes that are not worth telling the user about
_SILENT_REASONS = {"cancelled", "timed out"}


def main_menu(message: str = constants.ACTIONS_MESSAGE) -> ActionsContent:
    return (
        ActionBuilder.create("help", message)
        .add(XBTIFY_CREATE, "🤖 Create your XBT")
        .add("open-app", "🦊 Open App")
        .build()
    )


def _as_model(content: Any, model: type[BaseModel]) -> Any:
    if isinstance(content, model):
        return content
    try:
        return model.model_validate(content)
    except ValidationError as e:
        raise ProtocolViolation(
            f"Malformed {model.__name__} content", {"errors": e.errors(include_url=False)}
        ) from e


class MessageDispatcher:
    def __init__(
        self,
        transport: Transport,
        config: AgentConfig,
        registry: ActionRegistry,
        store: Store,
        reconciler: MembershipReconciler,
        answers: AnswerGenerator,
        verifier: PaymentVerifier,
        chain: Any,
        codecs: CodecRegistry | None = None,
        trigger_config: TriggerConfig = DEFAULT_TRIGGER_CONFIG,
    ) -> None:
        self.transport = transport
        self.config = config
        self.registry = registry
        self.store = store
        self.reconciler = reconciler
        self.answers = answers
        self.verifier = verifier
        self.chain = chain
        self.codecs = codecs or CodecRegistry()
        self.trigger_config = trigger_config

    @property
    def agent_address(self) -> str | None:
        return self.transport.address or self.reconciler.agent_address

    # -- Transport events ---------------------------------------------------

    async def handle_message_event(self, event: TransportEvent) -> None:
        """Build a :class:`MessageContext` for a ``message`` event and handle it."""
        try:
            raw = event.data.get("message")
            message = raw if isinstance(raw, DecodedMessage) else DecodedMessage.model_validate(raw)
            conversation = event.data.get("conversation")
            if conversation is None:
                conversation = await self.transport.get_conversation_by_id(message.conversation_id)
            if conversation is None:
                logger.warning("Conversation %s not found for message %s", message.conversation_id, message.id)
                return
        except Exception:
            logger.exception("❌ Unable to read message event")
            return
        await self.handle(MessageContext(message, conversation, self.transport))

    async def handle_group_event(self, event: TransportEvent) -> None:
        """The agent was added to a conversation: welcome it if it is new."""
        try:
            conversation = event.data.get("conversation")
            if conversation is None:
                conversation = await self.transport.get_conversation_by_id(event.data["conversation_id"])
            if conversation is None:
                return
            group, created = await self.reconciler.ensure_group(conversation)
            if created:
                logger.info("Sending welcome message to new group %s", group.id)
                await self.send_welcome(conversation)
        except Exception:
            logger.exception("❌ Error handling group event")

    # -- Messages -----------------------------------------------------------

    async def handle(self, ctx: MessageContext) -> None:
        """Handle one inbound message. Never raises."""
        try:
            await self._handle(ctx)
        except Exception as e:
            logger.exception("❌ Error processing message %s: %s", ctx.message.id, e)

    def should_ignore(self, ctx: MessageContext) -> bool:
        content = ctx.message.content
        if content is None or (isinstance(content, str) and not content.strip()):
            return True
        if ctx.is_from_self():
            return True
        return ctx.content_kind == ContentKind.REACTION

    async def _handle(self, ctx: MessageContext) -> None:
        if self.should_ignore(ctx):
            logger.debug("Skipping message %s", ctx.message.id)
            return

        if ctx.content_kind == ContentKind.INTENT:
            await self.handle_intent(ctx)
        elif ctx.is_dm():
            await self._handle_dm(ctx)
        elif ctx.is_group():
            await self._handle_group(ctx)

    async def handle_intent(self, ctx: MessageContext) -> None:
        content = ctx.message.content
        if isinstance(content, EncodedContent):
            content = self.codecs.decode(content)
        intent: Intent = _as_model(content, Intent)
        IntentCodec().validate(intent)
        logger.info("Intent %s from %s", intent.action_id, ctx.message.sender_inbox_id)

        try:
            await self.registry.invoke(ctx, intent)
        except UnknownAction as e:
            logger.warning("Unknown action: %s", e.action_id)
            await ctx.send_text(f"❌ Unknown action: {e.action_id}")
        except HandlerFailure as e:
            logger.error("Action %s failed: %s", e.action_id, e, exc_info=e.cause)
            await ctx.send_text(f"❌ Error: {e}")

    async def _handle_dm(self, ctx: MessageContext) -> None:
        sender_address = await ctx.get_sender_address()
        if not sender_address:
            logger.error("Wallet address not found for inbox %s", ctx.message.sender_inbox_id)
            return

        group, created = await self.reconciler.ensure_dm(
            ctx.conversation, ctx.message.sender_inbox_id, sender_address
        )
        if created:
            logger.info("Sending welcome message to new dm %s", group.id)
            await self.send_welcome(ctx.conversation)
            return

        kind = ctx.content_kind
        if kind == ContentKind.TRANSACTION_REFERENCE:
            await self.handle_transaction_reference(ctx, sender_address)
        elif kind in _ANSWERABLE:
            text = extract_message_content(ctx.message)
            if text.strip():
                await self.answer(ctx, text, sender_address)
        else:
            logger.debug("Ignoring %s content in dm %s", kind.value, group.id)

    async def _handle_group(self, ctx: MessageContext) -> None:
        group, _ = await self.reconciler.ensure_group(ctx.conversation)
        kind = ctx.content_kind

        if kind == ContentKind.GROUP_UPDATED:
            update: GroupUpdated = _as_model(ctx.message.content, GroupUpdated)
            try:
                members = await ctx.conversation.members()
            except Exception as e:
                logger.warning("Unable to list members of %s: %s", ctx.conversation_id, e)
                members = []
            outcome = await self.reconciler.reconcile(group, update, members)
            logger.debug("Reconciled group %s: %s", group.id, outcome.value)
            return

        if kind == ContentKind.TRANSACTION_REFERENCE:
            sender_address = await ctx.get_sender_address()
            if sender_address:
                await self.handle_transaction_reference(ctx, sender_address)
            return

        if kind not in _ANSWERABLE:
            logger.debug("Ignoring %s content in group %s", kind.value, group.id)
            return

        decision = await detect_trigger(
            ctx.message, ctx.client_inbox_id, ctx.history, self.trigger_config
        )
        if decision.help_hint:
            await ctx.send_text_reply(constants.HELP_HINT_MESSAGE)
            await send_actions(ctx, self.registry, main_menu())
            return
        if not decision.should_respond:
            return

        sender_address = await ctx.get_sender_address()
        if not sender_address:
            logger.error("Sender address not found for inbox %s", ctx.message.sender_inbox_id)
            return
        await self.answer(ctx, decision.text, sender_address)

    # -- Answers and payments -----------------------------------------------

    async def answer(self, ctx: MessageContext, text: str, sender_address: str) -> Answer:
        await ThinkingReaction(ctx).add()
        answer = await self.answers.generate(text, sender_address)

        if answer.payment_request is not None:
            await self.offer_payment(ctx, answer.payment_request, sender_address)
        if answer.show_menu:
            await send_actions(ctx, self.registry, main_menu(constants.DEFAULT_ACTIONS_MESSAGE))
        if answer.text:
            await ctx.send_text_reply(answer.text)
        return answer

    async def offer_payment(
        self,
        ctx: MessageContext,
        request: PaymentRequest,
        sender_address: str,
    ) -> None:
        """Offer the transfer button and watch for the sender's payment."""
        agent_address = self.agent_address
        if not agent_address:
            logger.error("❌ Unable to get agent address")
            await ctx.send_text("❌ Unable to get agent address")
            return

        message = request.text or (
            f"Confirm to create a new xbt ai clone for this wallet address {request.wallet_address}?"
        )
        actions = build_transfer_action(self.registry, message, self.transfer_handler(agent_address))
        await send_actions(ctx, self.registry, actions)

        if self.verifier.is_watching(sender_address):
            logger.debug("Already watching payments from %s", sender_address)
            return
        self.verifier.arm(
            sender_address,
            agent_address,
            on_result=self._notify_payment(ctx),
            timeout=self.config.payment_watch_timeout,
        )

    def _notify_payment(self, ctx: MessageContext) -> PaymentCallback:
        async def notify(result: PaymentResult) -> None:
            if result.accepted:
                await ctx.send_text(constants.PAYMENT_RECEIVED_MESSAGE)
            elif result.reason not in _SILENT_REASONS:
                await ctx.send_text(constants.PAYMENT_REJECTED_MESSAGE.format(reason=result.reason))

        return notify

    def transfer_handler(self, agent_address: str) -> ActionHandler:
        """One-shot handler that sends the wallet call for the paid feature."""

        async def on_transfer(ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
            sender_address = await ctx.get_sender_address()
            if not sender_address:
                logger.error("❌ Unable to get sender address")
                await ctx.send_text("❌ Unable to get sender address")
                return

            token_balance, eth_balance, fees = await asyncio.gather(
                self.chain.get_token_balance(self.config.usdc_address, sender_address),
                self.chain.get_eth_balance(sender_address),
                self.chain.estimate_fees(),
            )
            amount = self.config.min_transfer_amount
            amount_raw = to_base_units(amount, token_balance.decimals)
            logger.info(
                "Transfer of %s %s from %s (balance %s, eth %s, max fee %s)",
                amount, token_balance.symbol, sender_address,
                token_balance.balance_raw, eth_balance, fees.max_fee_per_gas,
            )

            if eth_balance <= fees.max_fee_per_gas:
                await ctx.send_text(f"❌ User does not have enough ETH on chain {self.config.chain_id}")
                return
            if token_balance.balance_raw < amount_raw:
                await ctx.send_text("❌ User does not have enough balance")
                return

            calls = transfer_erc20_calls(
                from_address=sender_address,
                to_address=agent_address,
                chain_id=self.config.chain_id,
                token_address=self.config.usdc_address,
                token_symbol=token_balance.symbol,
                token_decimals=token_balance.decimals,
                amount=amount,
                app_url=self.config.app_url,
                coinbase_api_key=self.config.coinbase_cdp_client_api_key,
                pimlico_api_key=self.config.pimlico_api_key,
            )
            await ctx.send(calls, ContentTypeWalletSendCalls)

        return on_transfer

    async def handle_transaction_reference(self, ctx: MessageContext, sender_address: str) -> PaymentResult:
        """Verify a transaction reference sent after paying."""
        reference: TransactionReference = _as_model(ctx.message.content, TransactionReference)
        agent_address = self.agent_address
        if not agent_address:
            raise ResolutionFailure("Agent address unavailable")

        self.verifier.cancel_watches(sender_address)
        result = await self.verifier.verify_receipt(reference.reference, sender_address, agent_address)
        if result.accepted:
            await ctx.send_text(constants.PAYMENT_RECEIVED_MESSAGE)
            return result

        if result.reason == "transaction already used":
            user = await self.store.get_user_by_wallet_address(sender_address)
            if user is not None and user.paid_tx_hash == reference.reference.lower():
                logger.info("Payment %s already credited to %s", reference.reference, sender_address)
                return result
        await ctx.send_text(constants.PAYMENT_REJECTED_MESSAGE.format(reason=result.reason))
        return result

    # -- Menus --------------------------------------------------------------

    async def send_welcome(self, conversation: Conversation) -> None:
        menu = main_menu(constants.DEFAULT_ACTIONS_MESSAGE_2)
        ActionsCodec().validate(menu)
        await conversation.send(constants.WELCOME_MESSAGE, ContentTypeText)
        message = await conversation.send(menu, ContentTypeActions)
        self.registry.session(conversation.id).last_sent_message = message

    def register_default_actions(self) -> None:
        """Register ``start``, ``open-app``, ``help`` and ``xbtify_create``."""
        self.registry.register("start", self._start)
        self.registry.register("open-app", self._open_app)
        self.registry.register("help", self._help)
        self.registry.register(XBTIFY_CREATE, self._create_clone)

    async def _start(self, ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
        await ctx.send_text(constants.START_MESSAGE)

    async def _open_app(self, ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
        await ctx.send_text(f"💸 explore group stats on the app {self.config.app_url}")

    async def _help(self, ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
        await ctx.send_text(constants.HELP_HINT_MESSAGE)

    async def _create_clone(self, ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
        sender_address = await ctx.get_sender_address()
        if not sender_address:
            await ctx.send_text("❌ Unable to get sender address")
            return
        request = await self.answers.create_clone_request(sender_address)
        await self.offer_payment(ctx, request, sender_address)
