"""
XBTify messaging agent.

Answers mentions and replies on an end-to-end encrypted messaging
transport, offers interactive button menus (Intent / Actions content),
unlocks AI-clone creation after a USDC payment on Base, and mirrors group
membership into a relational store.

Example::

    from xbtify_agent import AgentConfig, XbtAgent

    agent = XbtAgent(AgentConfig.from_env(), transport)
    await agent.start()
    ...
    await agent.stop()
"""

__version__ = "0.1.0"

from xbtify_agent.actions import (
    ActionBuilder,
    ActionRegistry,
    AppConfig,
    Menu,
    MenuAction,
    SelectionOption,
    build_transfer_action,
    initialize_app_from_config,
    send_actions,
    send_confirmation,
    send_selection,
    show_last_menu,
    show_menu,
    show_navigation_options,
    unique_action_id,
)
from xbtify_agent.agent import DeliveryStatus, XbtAgent
from xbtify_agent.codecs import (
    ActionsCodec,
    CodecRegistry,
    ContentKind,
    ContentTypeActions,
    ContentTypeIntent,
    IntentCodec,
    content_kind,
)
from xbtify_agent.config import AgentConfig
from xbtify_agent.context import Conversation, MessageContext, ThinkingReaction, Transport
from xbtify_agent.dispatcher import MessageDispatcher
from xbtify_agent.errors import (
    HandlerFailure,
    ProtocolViolation,
    ResolutionFailure,
    UnknownAction,
    UnsupportedEncoding,
    XbtifyError,
)
from xbtify_agent.membership import MembershipReconciler, ReconcileOutcome
from xbtify_agent.payments import PaymentVerifier, PaymentWatch
from xbtify_agent.store import Store
from xbtify_agent.triggers import TriggerConfig, detect_trigger, extract_message_content
from xbtify_agent.types import (
    Action,
    ActionsContent,
    DecodedMessage,
    GroupUpdated,
    Intent,
    PaymentResult,
    TransactionReference,
    TriggerAction,
    TriggerDecision,
)

__all__ = [
    "__version__",
    # Runtime
    "XbtAgent",
    "DeliveryStatus",
    "AgentConfig",
    "MessageDispatcher",
    "MessageContext",
    "Conversation",
    "Transport",
    "ThinkingReaction",
    # Interactive content
    "IntentCodec",
    "ActionsCodec",
    "CodecRegistry",
    "ContentKind",
    "ContentTypeIntent",
    "ContentTypeActions",
    "content_kind",
    "ActionRegistry",
    "ActionBuilder",
    "AppConfig",
    "Menu",
    "MenuAction",
    "SelectionOption",
    "build_transfer_action",
    "initialize_app_from_config",
    "send_actions",
    "send_confirmation",
    "send_selection",
    "show_menu",
    "show_last_menu",
    "show_navigation_options",
    "unique_action_id",
    # Triggers
    "TriggerConfig",
    "detect_trigger",
    "extract_message_content",
    # Payments and membership
    "PaymentVerifier",
    "PaymentWatch",
    "MembershipReconciler",
    "ReconcileOutcome",
    "Store",
    # Types
    "Action",
    "ActionsContent",
    "DecodedMessage",
    "GroupUpdated",
    "Intent",
    "PaymentResult",
    "TransactionReference",
    "TriggerAction",
    "TriggerDecision",
    # Errors
    "XbtifyError",
    "ProtocolViolation",
    "UnsupportedEncoding",
    "UnknownAction",
    "HandlerFailure",
    "ResolutionFailure",
]
