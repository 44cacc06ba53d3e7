"""
Answer generation over the OpenAI chat completions API.

The model either answers in text or calls a tool. ``xbtify_create`` turns
into a :class:`PaymentRequest` (the dispatcher then offers the transfer);
any other tool call asks the dispatcher to show the main menu.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from openai import AsyncOpenAI

from xbtify_agent import constants
from xbtify_agent.integrations import NeynarClient
from xbtify_agent.store import Store
from xbtify_agent.types import Answer, PaymentRequest

logger = logging.getLogger(__name__)

XBTIFY_CREATE = "xbtify_create"

TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": XBTIFY_CREATE,
            "description": (
                "If the user specify to create a new xbt ai clone, "
                "create a new xbt ai clone of the user"
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "walletAddress": {
                        "type": "string",
                        "description": (
                            "The ethereum wallet address of the person to create the xbt ai clone for"
                        ),
                    }
                },
                "required": ["walletAddress"],
            },
        },
    }
]


class AnswerGenerator:
    def __init__(
        self,
        client: AsyncOpenAI,
        store: Store,
        neynar: NeynarClient | None = None,
        model: str = "gpt-5-mini",
    ) -> None:
        self._client = client
        self._store = store
        self._neynar = neynar
        self.model = model

    async def generate(self, message: str, sender_address: str) -> Answer:
        """Answer ``message`` from ``sender_address``.

        Raises:
            openai.OpenAIError: The completion request failed.
        """
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": constants.SYSTEM_PROMPT},
                {
                    "role": "assistant",
                    "content": (
                        "If the user wants to create a new xbt ai clone, "
                        f"user's eth wallet address is {sender_address}."
                    ),
                },
                {"role": "user", "content": message},
            ],
            tools=TOOLS,
        )
        reply = response.choices[0].message
        tool_calls = reply.tool_calls or []

        if tool_calls:
            call = tool_calls[0]
            logger.debug("Model called tool %s", call.function.name)
            if call.function.name == XBTIFY_CREATE:
                requested = _tool_arguments(call.function.arguments).get("walletAddress")
                if requested and str(requested).lower() != sender_address.lower():
                    # The clone is always for the sender
                    logger.warning("Ignoring walletAddress %s from model for %s", requested, sender_address)
                return Answer(payment_request=await self.create_clone_request(sender_address))
            return Answer(show_menu=True)

        return Answer(text=reply.content or constants.DEFAULT_RESPONSE_MESSAGE)

    async def create_clone_request(self, wallet_address: str) -> PaymentRequest:
        """Look up the wallet's Farcaster profile and build the payment prompt."""
        profile = None
        if self._neynar is not None:
            try:
                profile = await self._neynar.fetch_user_by_address(wallet_address)
            except httpx.HTTPError as e:
                logger.warning("Neynar lookup for %s failed: %s", wallet_address, e)

        if profile is None:
            return PaymentRequest(
                wallet_address=wallet_address,
                text=(
                    "Confirm that you want to create a new xbt ai clone "
                    f"for this wallet address {wallet_address}"
                ),
            )

        user = await self._store.get_or_create_user(None, wallet_address)
        await self._store.attach_farcaster_profile(user.id, profile)
        logger.info("Linked fid %s to user %s", profile.fid, user.id)
        return PaymentRequest(
            wallet_address=wallet_address,
            fid=profile.fid,
            username=profile.username,
            text=(
                "Confirm that you want to create a new xbt ai clone for your wallet address "
                f"{wallet_address} (username: {profile.username} fid: {profile.fid})"
            ),
        )


def _tool_arguments(raw: str | None) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
