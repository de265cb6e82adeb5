"""Domain exceptions."""

from __future__ import annotations


class DegenWizardError(Exception):
    """Base class for bot errors."""


class ConfigError(DegenWizardError):
    """Configuration file or environment is invalid."""


class InvalidWalletError(DegenWizardError):
    """Address is not a valid EVM address."""


class WalletInUseError(DegenWizardError):
    """Address is already registered to another user."""


class TxRequestError(DegenWizardError):
    """Serialized transaction request is malformed."""


class ChainMismatchError(DegenWizardError):
    """RPC endpoint reports a different chain id than configured."""


class GatewayError(DegenWizardError):
    """Market gateway call failed."""


class SignalError(DegenWizardError):
    """Signal source could not produce a usable proposal."""
