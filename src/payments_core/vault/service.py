"""Per-tenant provider credential storage with encryption at rest."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import ProviderCredential, ProviderType
from ..database.repository import ProviderCredentialRepository
from ..exceptions import CryptoError, NotFoundError, ValidationError
from .crypto import REDACTION_MARKER, CredentialCipher, is_masked, mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderFieldSpec:
    """Which credential fields a provider accepts and which are secret."""
    secret: Tuple[str, ...]
    plain: Tuple[str, ...]
    required: Tuple[str, ...]

    @property
    def all_fields(self) -> Tuple[str, ...]:
        return self.secret + self.plain


PROVIDER_FIELDS: Dict[str, ProviderFieldSpec] = {
    ProviderType.STRIPE.value: ProviderFieldSpec(
        secret=("secret_key", "webhook_secret"),
        plain=("publishable_key",),
        required=("secret_key", "publishable_key"),
    ),
    ProviderType.TOYYIBPAY.value: ProviderFieldSpec(
        secret=("secret_key",),
        plain=("category_code",),
        required=("secret_key", "category_code"),
    ),
    ProviderType.BILLPLZ.value: ProviderFieldSpec(
        secret=("api_key", "x_signature_key"),
        plain=("collection_id",),
        required=("api_key", "x_signature_key", "collection_id"),
    ),
    ProviderType.CHIP.value: ProviderFieldSpec(
        secret=("api_key",),
        plain=("brand_id",),
        required=("api_key", "brand_id"),
    ),
}


def get_field_spec(provider_type: str) -> ProviderFieldSpec:
    try:
        return PROVIDER_FIELDS[provider_type]
    except KeyError:
        raise ValidationError(f"Unsupported provider type: {provider_type}") from None


@dataclass
class MaskedCredential:
    """Administrative view of one provider's credentials. Never holds plaintext."""
    provider_type: str
    configured: bool = False
    is_active: bool = False
    is_sandbox: bool = True
    usable: bool = True
    fields: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_type": self.provider_type,
            "configured": self.configured,
            "is_active": self.is_active,
            "is_sandbox": self.is_sandbox,
            "usable": self.usable,
            "fields": dict(self.fields),
        }


@dataclass
class ProviderCredentials:
    """Decrypted credentials handed to provider call-back clients."""
    tenant_id: str
    provider_type: str
    is_active: bool
    is_sandbox: bool
    fields: Dict[str, str] = field(repr=False, default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        return self.fields.get(name) or None


@dataclass
class RotationResult:
    """Outcome of rotating one credential row."""
    tenant_id: str
    provider_type: str
    rotated_fields: int = 0
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "provider_type": self.provider_type,
            "rotated_fields": self.rotated_fields,
            "skipped": self.skipped,
            "error": self.error,
        }


class CredentialVault:
    """
    Encrypts, masks and rotates tenant credentials.

    All reads and writes of ``provider_credentials`` go through this class.
    Secret fields only ever leave it decrypted through ``get_credentials``,
    which is meant for server-side provider calls, never for admin output.
    """

    def __init__(self, session: AsyncSession, cipher: CredentialCipher):
        self.session = session
        self.cipher = cipher
        self.repository = ProviderCredentialRepository(session)

    async def upsert(
        self,
        tenant_id: str,
        provider_type: str,
        fields: Dict[str, Optional[str]],
        is_active: bool = False,
        is_sandbox: bool = True,
    ) -> MaskedCredential:
        """
        Create or update credentials for a (tenant, provider) pair.

        A secret submitted empty, or as exactly the mask of the stored value,
        keeps whatever is already stored for that field. Any other value
        starting with the redaction marker is rejected, so a real secret
        with that prefix cannot be saved. Stored ciphertext is kept as is;
        legacy plaintext is encrypted on the way through.

        Args:
            tenant_id: Owning tenant.
            provider_type: Provider wire name.
            fields: Submitted field values, plaintext or masked.
            is_active: Enable the provider for the tenant.
            is_sandbox: Use sandbox endpoints.

        Returns:
            Masked view of the stored credentials.

        Raises:
            ValidationError: On unknown fields, an unsupported provider,
                activation without the required fields, or a masked value
                that does not match the stored secret.
            CryptoError: If a stored secret needed for validation cannot be
                decrypted.
        """
        if not tenant_id:
            raise ValidationError("Tenant ID is required")
        spec = get_field_spec(provider_type)

        unknown = sorted(set(fields) - set(spec.all_fields))
        if unknown:
            raise ValidationError(
                f"Unknown fields for {provider_type}: {', '.join(unknown)}"
            )

        existing = await self.repository.get(tenant_id, provider_type)
        stored: Dict[str, Any] = existing.fields if existing else {}

        resolved: Dict[str, str] = {}
        present: Dict[str, bool] = {}
        for name in spec.secret:
            submitted = fields.get(name)
            if submitted and not is_masked(submitted):
                resolved[name] = self.cipher.encrypt(submitted)
                present[name] = True
                continue

            previous = stored.get(name)
            if submitted and (not previous or mask(self.cipher.decrypt_if_needed(previous)) != submitted):
                raise ValidationError(
                    f"{name} starts with {REDACTION_MARKER!r} but is not the stored value's mask; "
                    "submit the full secret or leave the field unchanged"
                )
            if previous:
                # Keep the stored secret; encrypt it if it predates encryption
                resolved[name] = previous if self.cipher.is_encrypted(previous) else self.cipher.encrypt(previous)
                present[name] = True
            else:
                present[name] = False

        for name in spec.plain:
            if name in fields:
                value = fields.get(name) or ""
            else:
                value = stored.get(name) or ""
            if value:
                resolved[name] = value
            present[name] = bool(value)

        if is_active:
            missing = [name for name in spec.required if not present.get(name)]
            if missing:
                raise ValidationError(
                    f"Fields required to activate {provider_type}: {', '.join(missing)}"
                )

        if existing is None:
            credential = await self.repository.create(
                tenant_id=tenant_id,
                provider_type=provider_type,
                fields=resolved,
                is_active=is_active,
                is_sandbox=is_sandbox,
            )
        else:
            credential = await self.repository.update(
                existing,
                fields=resolved,
                is_active=is_active,
                is_sandbox=is_sandbox,
            )

        return self._to_masked(credential)

    async def get_masked(self, tenant_id: str) -> Dict[str, MaskedCredential]:
        """Masked view of every supported provider for a tenant.

        Providers with no row are reported as not configured. A row whose
        secrets cannot be decrypted is reported as unusable.
        """
        rows = {
            row.provider_type: row
            for row in await self.repository.list_for_tenant(tenant_id)
        }
        result: Dict[str, MaskedCredential] = {}
        for provider_type in PROVIDER_FIELDS:
            row = rows.get(provider_type)
            if row is None:
                result[provider_type] = MaskedCredential(provider_type=provider_type)
            else:
                result[provider_type] = self._to_masked(row)
        return result

    def _to_masked(self, credential: ProviderCredential) -> MaskedCredential:
        spec = get_field_spec(credential.provider_type)
        stored = credential.fields
        view = MaskedCredential(
            provider_type=credential.provider_type,
            configured=True,
            is_active=credential.is_active,
            is_sandbox=credential.is_sandbox,
        )

        for name in spec.secret:
            value = stored.get(name)
            if not value:
                continue
            try:
                view.fields[name] = mask(self.cipher.decrypt_if_needed(value))
            except CryptoError:
                logger.warning(
                    f"Stored {credential.provider_type} field {name} for tenant "
                    f"{credential.tenant_id} cannot be decrypted"
                )
                view.usable = False

        for name in spec.plain:
            value = stored.get(name)
            if value:
                view.fields[name] = value

        return view

    async def get_credentials(self, tenant_id: str, provider_type: str) -> ProviderCredentials:
        """Decrypted credentials for a provider call.

        Raises:
            NotFoundError: If the tenant has no credentials for the provider.
            CryptoError: If a stored secret cannot be decrypted.
        """
        spec = get_field_spec(provider_type)
        credential = await self.repository.get(tenant_id, provider_type)
        if credential is None:
            raise NotFoundError(f"No {provider_type} credentials for tenant {tenant_id}")

        stored = credential.fields
        values: Dict[str, str] = {}
        for name in spec.secret:
            if stored.get(name):
                values[name] = self.cipher.decrypt_if_needed(stored[name])
        for name in spec.plain:
            if stored.get(name):
                values[name] = stored[name]

        return ProviderCredentials(
            tenant_id=tenant_id,
            provider_type=provider_type,
            is_active=credential.is_active,
            is_sandbox=credential.is_sandbox,
            fields=values,
        )

    async def find_credentials(self, tenant_id: str, provider_type: str) -> Optional[ProviderCredentials]:
        """Like ``get_credentials`` but returns None when the row is absent.

        A row that exists but cannot be decrypted raises instead of reading
        as absent.

        Raises:
            CryptoError: If a stored secret cannot be decrypted.
        """
        try:
            return await self.get_credentials(tenant_id, provider_type)
        except NotFoundError:
            return None
        except CryptoError:
            logger.error(f"{provider_type} credentials for tenant {tenant_id} cannot be decrypted")
            raise

    async def rotate_credentials(self, tenant_id: str, provider_type: str) -> RotationResult:
        """Re-encrypt one row's secrets under the current key.

        Reads the row, re-encrypts every secret that is plaintext or still
        under the previous key, then writes back only if the row version is
        unchanged. Rows already under the current key are left untouched.

        Raises:
            NotFoundError: If the row does not exist.
        """
        credential = await self.repository.get(tenant_id, provider_type)
        if credential is None:
            raise NotFoundError(f"No {provider_type} credentials for tenant {tenant_id}")
        return await self._rotate_row(credential)

    async def rotate_all(self) -> List[RotationResult]:
        """Rotate every credential row. Per-row failures are reported, not raised."""
        results = []
        for credential in await self.repository.list_all():
            results.append(await self._rotate_row(credential))
        rotated = sum(1 for r in results if r.rotated_fields)
        failed = sum(1 for r in results if r.error)
        logger.info(
            f"Key rotation finished: {len(results)} rows checked, "
            f"{rotated} rotated, {failed} failed"
        )
        return results

    async def _rotate_row(self, credential: ProviderCredential) -> RotationResult:
        result = RotationResult(
            tenant_id=credential.tenant_id,
            provider_type=credential.provider_type,
        )
        spec = PROVIDER_FIELDS.get(credential.provider_type)
        if spec is None:
            result.skipped = True
            return result

        stored = credential.fields
        updated = dict(stored)
        try:
            for name in spec.secret:
                value = stored.get(name)
                if value and self.cipher.needs_rotation(value):
                    updated[name] = self.cipher.reencrypt(value)
                    result.rotated_fields += 1
        except CryptoError as e:
            logger.error(
                f"Cannot rotate {credential.provider_type} credentials for tenant "
                f"{credential.tenant_id}: {e}"
            )
            result.error = str(e)
            result.rotated_fields = 0
            return result

        if not result.rotated_fields:
            result.skipped = True
            return result

        written = await self.repository.update_fields_if_version(
            credential.id, credential.version, updated
        )
        if not written:
            # A concurrent update rewrote the row under the current key
            logger.info(
                f"Skipped rotation of {credential.provider_type} credentials for tenant "
                f"{credential.tenant_id}: row changed concurrently"
            )
            result.rotated_fields = 0
            result.skipped = True
            return result

        logger.info(
            f"Rotated {result.rotated_fields} {credential.provider_type} fields "
            f"for tenant {credential.tenant_id}"
        )
        return result
