from __future__ import annotations


class GatewayError(Exception):
    """Base error for agentgate."""


class ProviderConfigError(GatewayError):
    """Missing or invalid model provider configuration."""


class LedgerUnavailableError(GatewayError):
    """Usage ledger storage could not be read or updated."""


class RunPersistenceError(GatewayError):
    """Run record or evidence bundle could not be written."""


class UnknownTierError(GatewayError):
    """Subscription tier is not part of the tier table."""
