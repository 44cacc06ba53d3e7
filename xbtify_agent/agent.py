"""
XBTify agent runtime.

Wires the transport, store, chain client, answer generator and payment
verifier together and feeds transport events to the dispatcher.

Usage::

    agent = XbtAgent(AgentConfig.from_env(), transport)
    await agent.start()
    ...
    await agent.stop()
"""

from __future__ import annotations

import logging
from enum import Enum

from openai import AsyncOpenAI

from xbtify_agent.actions import ActionRegistry
from xbtify_agent.answers import AnswerGenerator
from xbtify_agent.chain import ChainClient
from xbtify_agent.config import AgentConfig
from xbtify_agent.context import Transport
from xbtify_agent.dispatcher import MessageDispatcher
from xbtify_agent.errors import ResolutionFailure
from xbtify_agent.events import GROUP, MESSAGE, START, STOP, UNHANDLED_ERROR, EventManager
from xbtify_agent.integrations import FeatureInitializer, NeynarClient
from xbtify_agent.membership import MembershipReconciler
from xbtify_agent.payments import PaymentVerifier
from xbtify_agent.store import Store
from xbtify_agent.types import TransportEvent

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    SENT = "sent"
    USER_NOT_FOUND = "user_not_found"
    NO_INBOX = "no_inbox"


class XbtAgent:
    """The XBTify messaging agent."""

    def __init__(
        self,
        config: AgentConfig,
        transport: Transport,
        *,
        store: Store | None = None,
        chain: ChainClient | None = None,
        answers: AnswerGenerator | None = None,
        initializer: FeatureInitializer | None = None,
        neynar: NeynarClient | None = None,
    ) -> None:
        self.config = config
        self.transport = transport

        self.store = store or Store(config.database_url)
        self.chain = chain or ChainClient(config.rpc_url, config.chain_id)
        if neynar is None and config.neynar_api_key:
            neynar = NeynarClient(config.neynar_api_key)
        self.neynar = neynar
        self.initializer = initializer or FeatureInitializer(config.backend_url, config.backend_api_key)
        self.answers = answers or AnswerGenerator(
            AsyncOpenAI(api_key=config.openai_api_key),
            self.store,
            self.neynar,
            model=config.openai_model,
        )

        self.registry = ActionRegistry()
        self.verifier = PaymentVerifier(
            self.chain,
            self.store,
            self.initializer,
            token_address=config.usdc_address,
            token_decimals=config.token_decimals,
            min_amount=config.min_transfer_amount,
            poll_interval=config.payment_poll_interval,
            default_timeout=config.payment_watch_timeout,
        )
        self.reconciler = MembershipReconciler(
            self.store,
            agent_inbox_id=transport.inbox_id,
            agent_address=transport.address or config.agent_address,
            known_agent_addresses=config.known_agent_addresses,
        )
        self.dispatcher = MessageDispatcher(
            transport,
            config,
            self.registry,
            self.store,
            self.reconciler,
            self.answers,
            self.verifier,
            self.chain,
        )
        self.events = EventManager()
        self._running = False

    @property
    def address(self) -> str | None:
        return self.dispatcher.agent_address

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Create tables, register actions and start consuming transport events.

        Raises:
            ResolutionFailure: The agent's own address cannot be determined.
        """
        if self._running:
            return
        if not self.address:
            raise ResolutionFailure("Unable to get xmtp agent address")

        await self.store.create_all()
        self.dispatcher.register_default_actions()

        self.events.subscribe(MESSAGE, self.dispatcher.handle_message_event)
        self.events.subscribe(GROUP, self.dispatcher.handle_group_event)
        self.events.subscribe(START, self._on_start)
        self.events.subscribe(STOP, self._on_stop)
        self.events.subscribe(UNHANDLED_ERROR, self._on_unhandled_error)
        self.events.start(self.transport.events())
        self._running = True

        logger.info("👽 XBTify XMTP Agent started 🗿 (inbox %s, address %s)", self.transport.inbox_id, self.address)

    async def run_forever(self) -> None:
        """Start, then block until the transport's event stream ends."""
        await self.start()
        try:
            await self.events.wait_closed()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop event handling, cancel payment watchers and close clients."""
        if not self._running:
            return
        self._running = False
        logger.info("Shutting down XBTify agent...")

        await self.events.stop()
        await self.verifier.close()
        await self.initializer.close()
        if self.neynar is not None:
            await self.neynar.close()
        await self.store.close()
        logger.info("Shutdown complete")

    async def send_direct_message(self, user_fid: int, message: str) -> DeliveryStatus:
        """Send ``message`` to the user with Farcaster ``user_fid`` over a DM."""
        user = await self.store.get_user_by_fid(user_fid)
        if user is None:
            return DeliveryStatus.USER_NOT_FOUND
        if not user.inbox_id:
            return DeliveryStatus.NO_INBOX

        await self.transport.sync()
        dm = await self.transport.get_dm_by_inbox_id(user.inbox_id)
        if dm is None:
            dm = await self.transport.new_dm(user.inbox_id)
        await dm.send(message)
        logger.info("Sent out-of-band message to fid %s", user_fid)
        return DeliveryStatus.SENT

    async def _on_start(self, event: TransportEvent) -> None:
        logger.info("👽 XBTify XMTP Agent is running...")

    async def _on_stop(self, event: TransportEvent) -> None:
        logger.info("Transport stopped")

    async def _on_unhandled_error(self, event: TransportEvent) -> None:
        logger.error("Unhandled transport error: %s", event.data.get("error"))
