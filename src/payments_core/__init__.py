# payments_core package
__version__ = "0.1.0"

from .config import Settings
from .database import DatabaseManager
from .exceptions import (
    PaymentsCoreError,
    ConfigurationError,
    AuthenticationError,
    ValidationError,
    NotFoundError,
    CryptoError,
    DuplicateEventError,
    PersistenceError,
    ProviderAPIError,
)
from .ledger import EventLedger, IngestResult
from .reconciliation import ReconciliationEngine, OwnerResolver
from .redirect import RedirectResolver, RedirectResult
from .services import PaymentsService
from .vault import CredentialCipher, CredentialVault
