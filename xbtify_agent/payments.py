"""
Payment verification for the paid feature.

Two ways in, one acceptance predicate:

- ``verify_receipt``: the user sent a transaction reference; read the
  receipt and look for a qualifying Transfer log in it.
- ``watch`` / ``arm``: poll for a live Transfer from the sender to the
  agent; the first matching log ends the watch, accepted or not.

A transfer is accepted only if it was emitted by the configured token, is
from the sender, is to the agent, moves at least the minimum amount, and its
hash was never accepted before. Acceptance records the hash and initializes
the feature in one database transaction. Verification never raises; every
failure comes back as a negative :class:`PaymentResult`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable

from xbtify_agent.erc20 import decode_transfer_log, from_base_units
from xbtify_agent.integrations import FeatureInitializer
from xbtify_agent.store import Store
from xbtify_agent.types import PaymentResult, TransferLog

logger = logging.getLogger(__name__)

PaymentCallback = Callable[[PaymentResult], Awaitable[None]]

__all__ = ["PaymentResult", "PaymentVerifier", "PaymentWatch"]


@dataclass(eq=False)
class PaymentWatch:
    """Handle for one armed background watcher."""

    sender: str
    recipient: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[PaymentResult] | None = None

    def cancel(self) -> None:
        self.cancel_event.set()

    async def result(self) -> PaymentResult:
        assert self.task is not None
        return await self.task


def _rejected(reason: str, tx_hash: str | None = None, amount: Decimal | None = None) -> PaymentResult:
    return PaymentResult(accepted=False, reason=reason, tx_hash=tx_hash, amount=amount)


class PaymentVerifier:
    def __init__(
        self,
        chain: Any,
        store: Store,
        initializer: FeatureInitializer,
        token_address: str,
        token_decimals: int,
        min_amount: Decimal,
        poll_interval: float = 2.0,
        default_timeout: float = 900.0,
    ) -> None:
        self._chain = chain
        self._store = store
        self._initializer = initializer
        self.token_address = token_address
        self.token_decimals = token_decimals
        self.min_amount = Decimal(min_amount)
        self.poll_interval = poll_interval
        self.default_timeout = default_timeout
        self._watches: set[PaymentWatch] = set()

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    def is_watching(self, sender: str) -> bool:
        return any(w.sender.lower() == sender.lower() for w in self._watches)

    def cancel_watches(self, sender: str) -> int:
        """Cancel every watcher armed for ``sender``; returns how many."""
        matching = [w for w in self._watches if w.sender.lower() == sender.lower()]
        for handle in matching:
            handle.cancel()
        return len(matching)

    def check_log(self, log: TransferLog, sender: str, recipient: str) -> str | None:
        """Return why ``log`` does not qualify, or ``None`` if it does.

        The replay check needs the store and happens in :meth:`accept`.
        """
        if log.address.lower() != self.token_address.lower():
            return f"transfer emitted by {log.address}, expected token {self.token_address}"
        if log.from_address.lower() != sender.lower():
            return f"transfer from {log.from_address}, expected {sender}"
        if log.to_address.lower() != recipient.lower():
            return f"transfer to {log.to_address}, expected {recipient}"
        amount = from_base_units(log.value, self.token_decimals)
        if amount < self.min_amount:
            return f"amount {amount} is below the minimum {self.min_amount}"
        return None

    async def accept(self, log: TransferLog, sender: str, recipient: str) -> PaymentResult:
        """Apply the acceptance predicate to ``log`` and unlock the feature."""
        amount = from_base_units(log.value, self.token_decimals)
        tx_hash = log.transaction_hash

        reason = self.check_log(log, sender, recipient)
        if reason is not None:
            logger.warning("Rejected payment %s: %s", tx_hash, reason)
            return _rejected(reason, tx_hash, amount)

        try:
            if await self._store.is_tx_hash_used(tx_hash):
                logger.warning("Rejected payment %s: transaction already used", tx_hash)
                return _rejected("transaction already used", tx_hash, amount)

            user = await self._store.get_or_create_user(None, sender)

            async def initialize() -> None:
                await self._initializer.initialize(user, sender)

            claimed = await self._store.claim_payment(user.id, tx_hash, log.value, initialize)
        except Exception as e:
            logger.exception("Failed to record payment %s", tx_hash)
            return _rejected(f"failed to record payment: {e}", tx_hash, amount)

        if not claimed:
            logger.warning("Rejected payment %s: transaction already used", tx_hash)
            return _rejected("transaction already used", tx_hash, amount)

        logger.info("✅ Accepted payment of %s from %s in %s", amount, sender, tx_hash)
        return PaymentResult(accepted=True, tx_hash=tx_hash, amount=amount, user_id=user.id)

    async def verify_receipt(self, tx_hash: str, sender: str, recipient: str) -> PaymentResult:
        """Verify a claimed transaction hash through its receipt."""
        try:
            receipt = await self._chain.get_transaction_receipt(tx_hash)
        except Exception as e:
            logger.warning("Unable to fetch receipt for %s: %s", tx_hash, e)
            return _rejected("receipt unavailable", tx_hash)

        if receipt is None:
            logger.warning("Rejected payment %s: transaction not found", tx_hash)
            return _rejected("transaction not found", tx_hash)
        if not receipt.succeeded:
            logger.warning("Rejected payment %s: transaction failed", tx_hash)
            return _rejected("transaction failed", tx_hash)

        first_reason: str | None = None
        for raw in receipt.logs:
            try:
                log = decode_transfer_log(raw)
            except (ValueError, KeyError):
                continue
            reason = self.check_log(log, sender, recipient)
            if reason is None:
                return await self.accept(log, sender, recipient)
            first_reason = first_reason or reason

        reason = first_reason or "no Transfer log in transaction"
        logger.warning("Rejected payment %s: %s", tx_hash, reason)
        return _rejected(reason, tx_hash)

    async def watch(
        self,
        sender: str,
        recipient: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PaymentResult:
        """Wait for the first Transfer from ``sender`` to ``recipient``.

        Stops on the first matching log, on ``cancel`` or after ``timeout``
        seconds, whichever comes first.
        """
        cancel = cancel or asyncio.Event()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (self.default_timeout if timeout is None else timeout)
        logger.info("Watching for %s transfers from %s to %s", self.token_address, sender, recipient)

        try:
            next_block = await self._chain.block_number()
            while True:
                if cancel.is_set():
                    logger.info("Payment watch for %s cancelled", sender)
                    return _rejected("cancelled")

                latest = await self._chain.block_number()
                if latest >= next_block:
                    logs = await self._chain.get_transfer_logs(
                        self.token_address, next_block, latest, sender=sender, recipient=recipient
                    )
                    next_block = latest + 1
                    for raw in logs:
                        try:
                            log = decode_transfer_log(raw)
                        except (ValueError, KeyError):
                            continue
                        return await self.accept(log, sender, recipient)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning("Payment watch for %s timed out", sender)
                    return _rejected("timed out")
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=min(self.poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass
        except Exception as e:
            logger.exception("Payment watch for %s failed", sender)
            return _rejected(f"watch failed: {e}")

    def arm(
        self,
        sender: str,
        recipient: str,
        on_result: PaymentCallback | None = None,
        timeout: float | None = None,
    ) -> PaymentWatch:
        """Start :meth:`watch` in the background and return its handle."""
        handle = PaymentWatch(sender=sender, recipient=recipient)

        async def run() -> PaymentResult:
            try:
                result = await self.watch(sender, recipient, timeout, handle.cancel_event)
                if on_result is not None:
                    try:
                        await on_result(result)
                    except Exception:
                        logger.exception("Payment callback failed for %s", sender)
                return result
            finally:
                self._watches.discard(handle)

        handle.task = asyncio.create_task(run())
        self._watches.add(handle)
        return handle

    async def close(self) -> None:
        """Cancel every armed watcher and wait for them to finish."""
        watches = list(self._watches)
        for handle in watches:
            handle.cancel()
        tasks = [h.task for h in watches if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watches.clear()
