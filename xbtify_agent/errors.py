"""
Error types for the XBTify agent.

Payment verification never raises: a rejected transfer is reported as a
negative :class:`~xbtify_agent.payments.PaymentResult` instead.
"""

from __future__ import annotations

from typing import Any


class XbtifyError(Exception):
    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.details = details


class ProtocolViolation(XbtifyError):
    """Malformed Intent or Actions payload."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__("protocol_violation", message, details)


class UnsupportedEncoding(ProtocolViolation):
    def __init__(self, encoding: str):
        super().__init__(f"unrecognized encoding {encoding}", {"encoding": encoding})
        self.code = "unsupported_encoding"


class UnknownAction(XbtifyError):
    def __init__(self, action_id: str):
        super().__init__("unknown_action", f"Unknown action: {action_id}", {"actionId": action_id})
        self.action_id = action_id


class HandlerFailure(XbtifyError):
    def __init__(self, action_id: str, cause: BaseException):
        super().__init__("handler_failure", str(cause), {"actionId": action_id})
        self.action_id = action_id
        self.cause = cause


class ResolutionFailure(XbtifyError):
    """Sender address, agent address or member resolution unavailable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__("resolution_failure", message, details)
