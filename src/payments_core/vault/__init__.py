"""Credential vault: encryption, masking and rotation of provider secrets."""

from .crypto import CredentialCipher, mask, is_masked, REDACTION_MARKER
from .service import (
    CredentialVault,
    MaskedCredential,
    ProviderCredentials,
    ProviderFieldSpec,
    RotationResult,
    PROVIDER_FIELDS,
)

__all__ = [
    "CredentialCipher",
    "mask",
    "is_masked",
    "REDACTION_MARKER",
    "CredentialVault",
    "MaskedCredential",
    "ProviderCredentials",
    "ProviderFieldSpec",
    "RotationResult",
    "PROVIDER_FIELDS",
]
