"""
Agent configuration.

Values come from the process environment (optionally a ``.env`` file)::

    config = AgentConfig.from_env()
"""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Literal, Mapping

from dotenv import load_dotenv
from eth_account import Account
from eth_utils import is_hex, to_checksum_address
from pydantic import BaseModel, Field, field_validator

from xbtify_agent import constants


class AgentConfig(BaseModel):
    """Configuration for running the XBTify agent."""

    app_url: str
    api_key: str
    port: int = 3000
    environment: Literal["development", "production"] = "production"

    # Transport
    wallet_key: str
    xmtp_env: Literal["dev", "local", "production"] = "production"

    # Storage
    database_url: str = "sqlite+aiosqlite:///xbtify.db"

    # Answer generation
    openai_api_key: str
    openai_model: str = "gpt-5-mini"

    # Integrations
    neynar_api_key: str | None = None
    backend_url: str | None = None
    backend_api_key: str | None = None
    coinbase_cdp_client_api_key: str = ""
    pimlico_api_key: str = ""

    # Chain / payment
    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = constants.BASE_CHAIN_ID
    usdc_address: str = constants.BASE_USDC_ADDRESS
    token_decimals: int = constants.USDC_DECIMALS
    min_transfer_amount: Decimal = constants.AGENT_TRANSFER_AMOUNT
    payment_watch_timeout: float = 900.0
    payment_poll_interval: float = 2.0

    known_agent_addresses: list[str] = Field(default_factory=list)

    @field_validator("wallet_key")
    @classmethod
    def _hex_key(cls, value: str) -> str:
        if not value or not is_hex(value):
            raise ValueError("wallet_key must be a valid hex string")
        return value

    @field_validator("usdc_address")
    @classmethod
    def _checksum(cls, value: str) -> str:
        return to_checksum_address(value)

    @field_validator("known_agent_addresses")
    @classmethod
    def _lower_addresses(cls, value: list[str]) -> list[str]:
        return [a.strip().lower() for a in value if a.strip()]

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def agent_address(self) -> str:
        """Checksummed address controlled by ``wallet_key``."""
        return Account.from_key(self.wallet_key).address

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AgentConfig:
        """Build a config from environment variables.

        Raises:
            pydantic.ValidationError: A required variable is missing or invalid.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        mapping = {
            "app_url": "APP_URL",
            "api_key": "API_KEY",
            "port": "PORT",
            "environment": "ENVIRONMENT",
            "wallet_key": "XMTP_WALLET_KEY",
            "xmtp_env": "XMTP_ENV",
            "database_url": "DATABASE_URL",
            "openai_api_key": "OPENAI_API_KEY",
            "openai_model": "OPENAI_MODEL",
            "neynar_api_key": "NEYNAR_API_KEY",
            "backend_url": "BACKEND_URL",
            "backend_api_key": "BACKEND_API_KEY",
            "coinbase_cdp_client_api_key": "COINBASE_CDP_CLIENT_API_KEY",
            "pimlico_api_key": "PIMLICO_API_KEY",
            "rpc_url": "RPC_URL",
            "chain_id": "CHAIN_ID",
            "usdc_address": "USDC_ADDRESS",
            "token_decimals": "TOKEN_DECIMALS",
            "min_transfer_amount": "MIN_TRANSFER_AMOUNT",
            "payment_watch_timeout": "PAYMENT_WATCH_TIMEOUT",
            "payment_poll_interval": "PAYMENT_POLL_INTERVAL",
        }
        data: dict[str, object] = {
            field: environ[var] for field, var in mapping.items() if environ.get(var)
        }
        known = environ.get("KNOWN_AGENT_ADDRESSES", "")
        data["known_agent_addresses"] = [a for a in known.split(",") if a.strip()]
        return cls(**data)
