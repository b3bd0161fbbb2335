"""Exceptions for conditions that are not ordinary business outcomes."""

from __future__ import annotations


class AccountNotFoundError(LookupError):
    """Raised when a ledger operation targets a user without a credit account."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No credit account for user {user_id}")
        self.user_id = user_id


class LedgerWriteError(RuntimeError):
    """Raised when a ledger mutation could not be persisted. Nothing was applied."""


class InvalidStateTransition(RuntimeError):
    """Raised on an attempt to move a payment transaction out of a terminal status."""


class PaymentProviderNotConfiguredError(RuntimeError):
    """Raised when a payment provider is selected but has no credentials."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} payments are not configured")
        self.provider = provider


class PaymentProviderError(RuntimeError):
    """Raised when a provider call fails at the network or API level.

    A provider error never means the payment failed: the charge may have gone
    through on the provider side.
    """

    def __init__(self, message: str, *, provider: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


class TransactionNotFoundError(LookupError):
    """Raised when a provider reference does not match a transaction of the caller."""

    def __init__(self, provider_ref: str) -> None:
        super().__init__(f"No payment transaction for reference {provider_ref}")
        self.provider_ref = provider_ref
