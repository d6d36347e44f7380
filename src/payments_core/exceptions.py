"""Error taxonomy shared by adapters, the ledger, the engine and the vault."""

from typing import Optional


class PaymentsCoreError(Exception):
    """Base class for all errors raised by the reconciliation core."""

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason or message


class ConfigurationError(PaymentsCoreError):
    """Required configuration is missing or malformed. Fatal at startup."""


class AuthenticationError(PaymentsCoreError):
    """Bad or missing provider signature. Never creates a ledger row."""


class ValidationError(PaymentsCoreError):
    """Required correlation fields are missing or a payload is malformed."""


class NotFoundError(PaymentsCoreError):
    """An owner, contribution or credential could not be resolved."""


class CryptoError(PaymentsCoreError):
    """Encryption key unavailable or a value could not be decrypted."""


class DuplicateEventError(PaymentsCoreError):
    """The provider event was already recorded. Treated as a successful no-op."""

    def __init__(self, provider: str, event_id: str):
        super().__init__(f"Event {event_id} from {provider} already recorded")
        self.provider = provider
        self.event_id = event_id


class PersistenceError(PaymentsCoreError):
    """Storage failure mid-transaction. The caller must roll back and return 5xx."""


class ProviderAPIError(PaymentsCoreError):
    """A provider's API call failed or returned an unusable response."""
