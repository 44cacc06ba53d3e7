"""
Action registry and interactive menu helpers.

Handlers are looked up by the ``actionId`` of an inbound Intent. A
registry is created per agent and passed explicitly to the dispatcher, so
independent agents (and tests) never share handlers.

Example::

    registry = ActionRegistry()

    async def start(ctx, metadata):
        await ctx.send_text("Let's go")

    registry.register("start", start)
    await ActionBuilder.create("main", "Pick one").add("start", "🚀 Start").send(ctx, registry)
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from xbtify_agent.codecs import ActionsCodec, ContentTypeActions
from xbtify_agent.context import MessageContext
from xbtify_agent.errors import HandlerFailure, UnknownAction
from xbtify_agent.types import Action, ActionsContent, ActionStyle, Intent

logger = logging.getLogger(__name__)

_actions_codec = ActionsCodec()

# (context, intent metadata)
ActionHandler = Callable[[MessageContext, dict[str, Any] | None], Awaitable[None]]


def unique_action_id(prefix: str) -> str:
    """Generate an action id that cannot repeat within this process."""
    return f"{prefix}-{time.time_ns()}-{secrets.token_hex(4)}"


@dataclass
class MenuAction:
    id: str
    label: str
    style: ActionStyle | None = None
    metadata: dict[str, Any] | None = None
    handler: ActionHandler | None = None
    show_navigation_options: bool = False


@dataclass
class Menu:
    id: str
    title: str
    actions: list[MenuAction] = field(default_factory=list)


@dataclass
class AppConfig:
    name: str
    menus: dict[str, Menu] = field(default_factory=dict)
    auto_show_menu_after_action: bool = True
    default_navigation_message: str | None = None


@dataclass
class ConversationSession:
    """Per-conversation interactive state."""

    last_sent_message: Any = None
    last_shown_menu: tuple[AppConfig, str] | None = None


class ActionRegistry:
    """Maps action ids to handlers for the lifetime of one agent."""

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        # Single-use id -> every id registered with it
        self._once: dict[str, tuple[str, ...]] = {}
        self._sessions: dict[str, ConversationSession] = {}

    def register(self, action_id: str, handler: ActionHandler, once: bool = False) -> None:
        """Register ``handler`` for ``action_id``.

        With ``once=True`` the handler is removed the first time it is invoked.
        """
        if action_id in self._handlers:
            logger.warning("Action %s already registered, overwriting", action_id)
        self._handlers[action_id] = handler
        if once:
            self._once[action_id] = (action_id,)
        else:
            self._once.pop(action_id, None)

    def register_once(self, handlers: dict[str, ActionHandler]) -> None:
        """Register a set of alternatives; invoking any one removes them all."""
        for action_id, handler in handlers.items():
            self.register(action_id, handler)
        group = tuple(handlers)
        for action_id in group:
            self._once[action_id] = group

    def unregister(self, action_id: str) -> None:
        self._handlers.pop(action_id, None)
        self._once.pop(action_id, None)

    def get(self, action_id: str) -> ActionHandler | None:
        return self._handlers.get(action_id)

    def clear(self) -> None:
        self._handlers.clear()
        self._once.clear()
        logger.info("Cleared all registered actions")

    def registered_actions(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def session(self, conversation_id: str) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = self._sessions[conversation_id] = ConversationSession()
        return session

    async def invoke(self, ctx: MessageContext, intent: Intent) -> None:
        """Run the handler registered for ``intent.action_id``.

        Raises:
            UnknownAction: No handler is registered for the action id.
            HandlerFailure: The handler raised; the original error is chained.
        """
        handler = self.get(intent.action_id)
        if handler is None:
            raise UnknownAction(intent.action_id)
        for action_id in self._once.get(intent.action_id, ()):
            self.unregister(action_id)
        try:
            await handler(ctx, intent.metadata)
        except Exception as e:
            raise HandlerFailure(intent.action_id, e) from e


class ActionBuilder:
    """Accumulates actions into one :class:`ActionsContent`."""

    def __init__(self, actions_id: str, description: str) -> None:
        self._id = actions_id
        self._description = description
        self._actions: list[Action] = []

    @classmethod
    def create(cls, actions_id: str, description: str) -> ActionBuilder:
        return cls(actions_id, description)

    def add(
        self,
        id: str,
        label: str,
        style: ActionStyle | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActionBuilder:
        self._actions.append(Action(id=id, label=label, style=style, metadata=metadata))
        return self

    def build(self) -> ActionsContent:
        return ActionsContent(id=self._id, description=self._description, actions=list(self._actions))

    async def send(self, ctx: MessageContext, registry: ActionRegistry) -> Any:
        return await send_actions(ctx, registry, self.build())


async def send_actions(ctx: MessageContext, registry: ActionRegistry, content: ActionsContent) -> Any:
    """Send an actions menu and remember it as the conversation's last message.

    Raises:
        ProtocolViolation: The menu would not survive encoding.
    """
    _actions_codec.validate(content)
    message = await ctx.send(content, ContentTypeActions)
    registry.session(ctx.conversation_id).last_sent_message = message
    return message


async def _cancelled(ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
    await ctx.send_text("❌ Cancelled")


async def send_confirmation(
    ctx: MessageContext,
    registry: ActionRegistry,
    message: str,
    on_yes: ActionHandler,
    on_no: ActionHandler | None = None,
) -> None:
    """Offer a confirm/cancel pair backed by one-shot handlers."""
    yes_id = unique_action_id("confirm")
    no_id = unique_action_id("cancel")
    registry.register_once({yes_id: on_yes, no_id: on_no or _cancelled})

    await (
        ActionBuilder.create(yes_id, message)
        .add(yes_id, "✅ Confirm")
        .add(no_id, "❌ Cancel", style="danger")
        .send(ctx, registry)
    )


def build_transfer_action(
    registry: ActionRegistry,
    message: str,
    on_transfer: ActionHandler,
    label: str = "🤖 Pay for my XBT",
) -> ActionsContent:
    transfer_id = unique_action_id("transfer")
    registry.register(transfer_id, on_transfer, once=True)
    return ActionBuilder.create(transfer_id, message).add(transfer_id, label).build()


@dataclass
class SelectionOption:
    id: str
    label: str
    handler: ActionHandler
    style: ActionStyle | None = None
    metadata: dict[str, Any] | None = None


async def send_selection(
    ctx: MessageContext,
    registry: ActionRegistry,
    message: str,
    options: list[SelectionOption],
) -> None:
    builder = ActionBuilder.create(unique_action_id("selection"), message)
    for option in options:
        builder.add(option.id, option.label, style=option.style, metadata=option.metadata)
    content = builder.build()
    # Nothing is registered for a menu that cannot be sent
    _actions_codec.validate(content)
    registry.register_once({option.id: option.handler for option in options})
    await send_actions(ctx, registry, content)


# ============================================================
#  Menus
# ============================================================


async def show_menu(
    ctx: MessageContext,
    registry: ActionRegistry,
    config: AppConfig,
    menu_id: str,
) -> None:
    menu = config.menus.get(menu_id)
    if menu is None:
        logger.error("Menu not found: %s", menu_id)
        await ctx.send_text(f"❌ Menu not found: {menu_id}")
        return

    registry.session(ctx.conversation_id).last_shown_menu = (config, menu_id)

    # Stable id, menus are re-shown rather than one-shot
    builder = ActionBuilder.create(menu_id, menu.title)
    for action in menu.actions:
        builder.add(action.id, action.label, style=action.style, metadata=action.metadata)
    await builder.send(ctx, registry)


async def show_last_menu(ctx: MessageContext, registry: ActionRegistry) -> None:
    last = registry.session(ctx.conversation_id).last_shown_menu
    if last is None:
        logger.warning("No last menu for %s, falling back to main menu", ctx.conversation_id)
        await ctx.send_text("Returning to main menu...")
        return
    config, menu_id = last
    logger.debug("Showing last menu %s in %s", menu_id, ctx.conversation_id)
    await show_menu(ctx, registry, config, menu_id)


async def show_navigation_options(
    ctx: MessageContext,
    registry: ActionRegistry,
    config: AppConfig,
    message: str,
    custom_actions: list[Action] | None = None,
) -> None:
    if not config.auto_show_menu_after_action:
        await ctx.send_text(message)
        return

    navigation = ActionBuilder.create("navigation-options", message)
    if custom_actions:
        for action in custom_actions:
            navigation.add(action.id, action.label, style=action.style)
    else:
        main_menu = config.menus.get("main-menu")
        if main_menu:
            for item in main_menu.actions:
                navigation.add(item.id, item.label, style=item.style)
    await navigation.send(ctx, registry)


def initialize_app_from_config(
    registry: ActionRegistry,
    config: AppConfig,
    deferred_handlers: dict[str, ActionHandler] | None = None,
) -> None:
    """Register every handler a menu configuration implies.

    - actions with a handler (optionally re-showing the last menu afterwards)
    - deferred handlers supplied by the caller
    - actions without a handler whose id names another menu (navigation)
    - ``main-menu``, ``help`` and ``back-to-main``
    """
    logger.info("Initializing app: %s", config.name)

    for menu in config.menus.values():
        for action in menu.actions:
            if action.handler is not None:
                registry.register(action.id, _wrap_with_navigation(registry, action))
                logger.debug("Registered handler for action %s", action.id)

    for action_id, handler in (deferred_handlers or {}).items():
        registry.register(action_id, handler)

    for menu in config.menus.values():
        for action in menu.actions:
            if action.handler is None and action.id in config.menus:
                registry.register(action.id, _navigate_to(registry, config, action.id))

    for nav_id in ("main-menu", "help", "back-to-main"):
        registry.register(nav_id, _navigate_to(registry, config, "main-menu"))


def _wrap_with_navigation(registry: ActionRegistry, action: MenuAction) -> ActionHandler:
    handler = action.handler
    assert handler is not None

    async def wrapped(ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
        await handler(ctx, metadata)
        if action.show_navigation_options:
            await show_last_menu(ctx, registry)

    return wrapped


def _navigate_to(registry: ActionRegistry, config: AppConfig, menu_id: str) -> ActionHandler:
    async def navigate(ctx: MessageContext, metadata: dict[str, Any] | None) -> None:
        await show_menu(ctx, registry, config, menu_id)

    return navigate
