"""
Decide whether the agent should answer a message.

The agent answers replies to its own messages and messages that mention
it. Messages that look like a generic bot command (``/help``, ``/bot``)
without addressing XBTify get a help hint instead of an answer.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Awaitable, Callable, Sequence

from pydantic import BaseModel

from xbtify_agent import constants
from xbtify_agent.codecs import ContentKind, content_kind
from xbtify_agent.types import DecodedMessage, Reply, TriggerAction, TriggerDecision

logger = logging.getLogger(__name__)

HistoryLoader = Callable[[], Awaitable[Sequence[DecodedMessage]]]

_REPLY_FALLBACK_RE = re.compile(r'Replied with "(.+)" to an earlier message', re.DOTALL)


class TriggerConfig(BaseModel):
    triggers: list[str] = list(constants.AGENT_TRIGGERS)
    bot_mentions: list[str] = list(constants.BOT_MENTIONS)
    handle: str = constants.AGENT_HANDLE
    ens_suffix: str = constants.AGENT_ENS_SUFFIX


DEFAULT_TRIGGER_CONFIG = TriggerConfig()


def extract_message_content(message: DecodedMessage) -> str:
    """Return the user-visible text of a message.

    Replies prefer the structured reply body, then the templated fallback
    ``Replied with "<text>" to an earlier message``, then the raw fallback.
    """
    content = message.content

    if content_kind(message.content_type) == ContentKind.REPLY:
        body = _reply_body(content)
        if body:
            return str(body)

        if isinstance(message.fallback, str) and message.fallback:
            match = _REPLY_FALLBACK_RE.search(message.fallback)
            if match:
                return match.group(1)
            return message.fallback

        params = message.parameters or {}
        if params.get("content"):
            return str(params["content"])
        if params.get("text"):
            return str(params["text"])

        if content is None:
            return ""
        if isinstance(content, BaseModel):
            return content.model_dump_json(by_alias=True)
        return json.dumps(content, default=str)

    if content is None:
        return ""
    return str(content)


def _reply_body(content: Any) -> Any:
    if isinstance(content, Reply):
        return content.content
    if isinstance(content, dict):
        return content.get("content")
    return None


def _reply_reference(message: DecodedMessage) -> str | None:
    reference = (message.parameters or {}).get("reference")
    if reference:
        return str(reference)
    if isinstance(message.content, Reply):
        return message.content.reference
    if isinstance(message.content, dict) and message.content.get("reference"):
        return str(message.content["reference"])
    return None


def _mention_pattern(handle: str, ens_suffix: str) -> re.Pattern[str]:
    return re.compile(
        rf"(^|\s)@?{re.escape(handle)}(?:{re.escape(ens_suffix)})?(?![a-z0-9_])",
        re.IGNORECASE,
    )


def contains_agent_mention(
    text: str,
    handle: str = constants.AGENT_HANDLE,
    ens_suffix: str = constants.AGENT_ENS_SUFFIX,
) -> bool:
    """Match ``xbtify`` / ``@xbtify`` / ``xbtify.base.eth`` as a whole word."""
    return bool(_mention_pattern(handle, ens_suffix).search(text))


def has_trigger(text: str, config: TriggerConfig = DEFAULT_TRIGGER_CONFIG) -> bool:
    lowered = text.lower().strip()
    if any(trigger.lower() in lowered for trigger in config.triggers):
        return True
    return contains_agent_mention(text, config.handle, config.ens_suffix)


def should_send_help_hint(text: str, config: TriggerConfig = DEFAULT_TRIGGER_CONFIG) -> bool:
    lowered = text.lower().strip()
    return any(mention in lowered for mention in config.bot_mentions) and not has_trigger(text, config)


async def is_reply_to_agent(
    message: DecodedMessage,
    agent_inbox_id: str,
    history: HistoryLoader,
) -> bool:
    """True iff ``message`` replies to a message the agent authored."""
    if content_kind(message.content_type) != ContentKind.REPLY:
        return False

    reference = _reply_reference(message)
    if not reference:
        return False

    try:
        messages = await history()
    except Exception as e:
        logger.error("Error loading history for %s: %s", message.conversation_id, e)
        return False

    for msg in messages:
        if msg.id == reference:
            return msg.sender_inbox_id.lower() == agent_inbox_id.lower()
    return False


async def detect_trigger(
    message: DecodedMessage,
    agent_inbox_id: str,
    history: HistoryLoader,
    config: TriggerConfig = DEFAULT_TRIGGER_CONFIG,
) -> TriggerDecision:
    text = extract_message_content(message)
    if not text.strip():
        return TriggerDecision(action=TriggerAction.IGNORE, text=text)

    if should_send_help_hint(text, config):
        return TriggerDecision(action=TriggerAction.HELP_HINT, text=text)

    reply_to_agent = await is_reply_to_agent(message, agent_inbox_id, history)
    triggered = has_trigger(text, config)
    action = TriggerAction.RESPOND if reply_to_agent or triggered else TriggerAction.IGNORE
    return TriggerDecision(
        action=action,
        text=text,
        is_reply_to_agent=reply_to_agent,
        has_trigger=triggered,
    )
