"""Exception types raised across the audit pipeline.

Deterministic rule violations are never raised: they are ``ValidationResult``
rows. Everything here is a genuine failure that a caller can catch.
"""

from __future__ import annotations


class InvoiceFlowError(Exception):
    """Base class for all InvoiceFlow errors."""


class ConfigurationError(InvoiceFlowError):
    pass


class ProviderNotConfiguredError(ConfigurationError):
    """No reasoning provider is configured for the requested tier."""

    def __init__(self, tier: str, detail: str = "") -> None:
        self.tier = tier
        message = f"No reasoning provider configured for tier {tier}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ReasoningServiceError(InvoiceFlowError):
    """Transport or parse failure while talking to a reasoning provider."""

    def __init__(self, message: str, *, provider: str = "", model: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model


class ReasoningTransportError(ReasoningServiceError):
    pass


class ReasoningParseError(ReasoningServiceError):
    pass


class EscalationServiceError(InvoiceFlowError):
    pass


class EscalationNotAllowedError(InvoiceFlowError):
    pass


class DraftingServiceError(InvoiceFlowError):
    pass


class NotificationDispatchError(InvoiceFlowError):
    """One recipient could not be reached. Logged, never raised past the engine."""

    def __init__(self, channel: str, recipient: str, reason: str) -> None:
        super().__init__(f"{channel} dispatch to {recipient} failed: {reason}")
        self.channel = channel
        self.recipient = recipient
        self.reason = reason


class InvoiceNotFoundError(InvoiceFlowError):
    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class InvalidTransitionError(InvoiceFlowError):
    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {new}")
        self.current = current
        self.new = new


class AuditInProgressError(InvoiceFlowError):
    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"An audit is already running for invoice {invoice_id}")
        self.invoice_id = invoice_id


class AuditCooldownError(InvoiceFlowError):
    def __init__(self, invoice_id: str, remaining_seconds: float) -> None:
        super().__init__(f"Audit retry for invoice {invoice_id} available in {remaining_seconds:.1f}s")
        self.invoice_id = invoice_id
        self.remaining_seconds = remaining_seconds
