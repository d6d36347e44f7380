"""Tests for credential encryption, masking, upsert and rotation."""

import pytest

from payments_core.database import ProviderCredentialRepository
from payments_core.exceptions import CryptoError, NotFoundError, ValidationError
from payments_core.vault import CredentialCipher, CredentialVault, mask, is_masked

from conftest import ENCRYPTION_KEY, OLD_ENCRYPTION_KEY, TEST_KDF_ITERATIONS


class TestMask:
    """Tests for secret masking."""

    def test_long_secret_keeps_last_four(self):
        assert mask("sk_live_1234567890abcd") == "****abcd"

    def test_short_secret_is_fully_masked(self):
        assert mask("abc12345") == "************"
        assert mask("x") == "************"

    def test_mask_never_equals_secret_and_is_stable(self):
        for secret in ["sk_test_51Habcdef1234", "12345678", "a", "****1234x"]:
            assert mask(secret) != secret
            assert mask(secret) == mask(secret)

    def test_empty_secret(self):
        assert mask("") == ""
        assert mask(None) == ""

    def test_is_masked(self):
        assert is_masked("****1234")
        assert is_masked(mask("sk_live_1234567890abcd"))
        assert not is_masked("sk_live_1234")
        assert not is_masked("")
        assert not is_masked(None)


class TestCredentialCipher:
    """Tests for the AES-GCM credential cipher."""

    def test_requires_key_of_minimum_length(self):
        with pytest.raises(CryptoError):
            CredentialCipher("too-short")
        with pytest.raises(CryptoError):
            CredentialCipher(None)

    def test_round_trip(self, cipher):
        for secret in ["sk_test_123", "ü-unicode-✓", "a" * 500]:
            token = cipher.encrypt(secret)
            assert token != secret
            assert cipher.decrypt(token) == secret

    def test_encryption_is_randomized(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_empty_values_stay_empty(self, cipher):
        assert cipher.encrypt("") == ""
        assert cipher.decrypt("") == ""
        assert cipher.decrypt_if_needed(None) == ""

    def test_decrypt_if_needed_passes_plaintext_through(self, cipher):
        assert cipher.decrypt_if_needed("sk_live_legacy_plaintext") == "sk_live_legacy_plaintext"

    def test_decrypt_if_needed_decrypts_ciphertext(self, cipher):
        token = cipher.encrypt("secret-value")
        assert cipher.is_encrypted(token)
        assert cipher.decrypt_if_needed(token) == "secret-value"

    def test_wrong_key_raises_crypto_error(self, cipher):
        other = CredentialCipher(OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        token = other.encrypt("secret-value")
        with pytest.raises(CryptoError):
            cipher.decrypt(token)

    def test_previous_key_still_decrypts(self):
        old = CredentialCipher(OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        token = old.encrypt("secret-value")

        rotating = CredentialCipher(
            ENCRYPTION_KEY, OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS
        )
        assert rotating.has_previous_key
        assert rotating.decrypt(token) == "secret-value"
        assert rotating.needs_rotation(token)

    def test_reencrypt_moves_value_to_current_key(self):
        old = CredentialCipher(OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        token = old.encrypt("secret-value")
        rotating = CredentialCipher(
            ENCRYPTION_KEY, OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS
        )

        rotated = rotating.reencrypt(token)
        assert rotated != token
        assert not rotating.needs_rotation(rotated)
        assert rotating.reencrypt(rotated) == rotated

        current_only = CredentialCipher(ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        assert current_only.decrypt(rotated) == "secret-value"

    def test_plaintext_needs_rotation(self, cipher):
        assert cipher.needs_rotation("legacy")
        assert not cipher.needs_rotation(cipher.encrypt("fresh"))


class TestCredentialVaultUpsert:
    """Tests for the vault-aware upsert."""

    async def test_create_encrypts_secrets(self, db, cipher):
        async with db.session() as session:
            view = await CredentialVault(session, cipher).upsert(
                "tenant-1",
                "toyyibpay",
                {"secret_key": "ty-secret-abcdef1234", "category_code": "cat01"},
                is_active=True,
            )
        assert view.configured
        assert view.is_active
        assert view.fields == {"secret_key": "****1234", "category_code": "cat01"}

        async with db.session() as session:
            row = await ProviderCredentialRepository(session).get("tenant-1", "toyyibpay")
            stored = row.fields["secret_key"]
        assert stored != "ty-secret-abcdef1234"
        assert cipher.decrypt(stored) == "ty-secret-abcdef1234"

    async def test_masked_placeholder_keeps_stored_ciphertext(self, db, cipher):
        """A masked secret and a changed sandbox flag only change the flag."""
        async with db.session() as session:
            await CredentialVault(session, cipher).upsert(
                "tenant-1",
                "billplz",
                {
                    "api_key": "bp-api-key-00001234",
                    "x_signature_key": "bp-xsig-key-5678",
                    "collection_id": "col_1",
                },
                is_active=True,
                is_sandbox=True,
            )
        async with db.session() as session:
            before = (await ProviderCredentialRepository(session).get("tenant-1", "billplz")).fields

        async with db.session() as session:
            view = await CredentialVault(session, cipher).upsert(
                "tenant-1",
                "billplz",
                {"api_key": "****1234", "x_signature_key": "", "collection_id": "col_1"},
                is_active=True,
                is_sandbox=False,
            )

        async with db.session() as session:
            row = await ProviderCredentialRepository(session).get("tenant-1", "billplz")
        assert row.fields["api_key"] == before["api_key"]
        assert row.fields["x_signature_key"] == before["x_signature_key"]
        assert row.is_sandbox is False
        assert view.fields["api_key"] == "****1234"

    async def test_legacy_plaintext_is_encrypted_when_kept(self, db, cipher):
        async with db.session() as session:
            await ProviderCredentialRepository(session).create(
                "tenant-1", "chip", {"api_key": "chip-legacy-key-9999", "brand_id": "b1"}
            )

        async with db.session() as session:
            await CredentialVault(session, cipher).upsert(
                "tenant-1", "chip", {"api_key": "****9999", "brand_id": "b2"}, is_active=True
            )

        async with db.session() as session:
            row = await ProviderCredentialRepository(session).get("tenant-1", "chip")
        assert cipher.is_encrypted(row.fields["api_key"])
        assert cipher.decrypt(row.fields["api_key"]) == "chip-legacy-key-9999"
        assert row.fields["brand_id"] == "b2"

    async def test_masked_value_without_stored_secret_is_rejected(self, db, cipher):
        async with db.session() as session:
            with pytest.raises(ValidationError, match="secret_key"):
                await CredentialVault(session, cipher).upsert(
                    "tenant-1", "stripe", {"secret_key": "****live-secret-0001"}
                )

    async def test_masked_value_for_another_secret_is_rejected(self, db, cipher):
        async with db.session() as session:
            await CredentialVault(session, cipher).upsert(
                "tenant-1", "toyyibpay", {"secret_key": "ty-secret-abcdef1234"}
            )

        async with db.session() as session:
            with pytest.raises(ValidationError, match="full secret"):
                await CredentialVault(session, cipher).upsert(
                    "tenant-1", "toyyibpay", {"secret_key": "****9999"}
                )

        async with db.session() as session:
            creds = await CredentialVault(session, cipher).get_credentials("tenant-1", "toyyibpay")
        assert creds.get("secret_key") == "ty-secret-abcdef1234"

    async def test_new_plaintext_replaces_secret(self, db, cipher):
        async with db.session() as session:
            vault = CredentialVault(session, cipher)
            await vault.upsert("tenant-1", "stripe", {"secret_key": "sk_test_old_0001"})
            await vault.upsert("tenant-1", "stripe", {"secret_key": "sk_test_new_0002"})
            creds = await vault.get_credentials("tenant-1", "stripe")
        assert creds.get("secret_key") == "sk_test_new_0002"

    async def test_activation_requires_fields(self, db, cipher):
        async with db.session() as session:
            with pytest.raises(ValidationError) as exc_info:
                await CredentialVault(session, cipher).upsert(
                    "tenant-1", "billplz", {"api_key": "bp-api-key-00001234"}, is_active=True
                )
        assert "x_signature_key" in str(exc_info.value)

    async def test_inactive_credentials_may_be_incomplete(self, db, cipher):
        async with db.session() as session:
            view = await CredentialVault(session, cipher).upsert(
                "tenant-1", "billplz", {"api_key": "bp-api-key-00001234"}, is_active=False
            )
        assert view.configured
        assert not view.is_active

    async def test_unknown_field_rejected(self, db, cipher):
        async with db.session() as session:
            with pytest.raises(ValidationError):
                await CredentialVault(session, cipher).upsert(
                    "tenant-1", "toyyibpay", {"password": "nope"}
                )

    async def test_unknown_provider_rejected(self, db, cipher):
        async with db.session() as session:
            with pytest.raises(ValidationError):
                await CredentialVault(session, cipher).upsert("tenant-1", "paypal", {})


class TestCredentialVaultReads:
    """Tests for masked and decrypted reads."""

    async def test_get_masked_covers_every_provider(self, db, cipher):
        async with db.session() as session:
            vault = CredentialVault(session, cipher)
            await vault.upsert(
                "tenant-1",
                "toyyibpay",
                {"secret_key": "ty-secret-abcdef1234", "category_code": "cat01"},
                is_active=True,
            )
            masked = await vault.get_masked("tenant-1")

        assert set(masked) == {"stripe", "toyyibpay", "billplz", "chip"}
        assert masked["toyyibpay"].configured
        assert masked["toyyibpay"].fields["secret_key"] == "****1234"
        assert not masked["billplz"].configured

    async def test_undecryptable_row_is_reported_unusable(self, db, cipher):
        foreign = CredentialCipher(OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        async with db.session() as session:
            await ProviderCredentialRepository(session).create(
                "tenant-1",
                "toyyibpay",
                {"secret_key": foreign.encrypt("ty-secret"), "category_code": "cat01"},
                is_active=True,
            )

        async with db.session() as session:
            vault = CredentialVault(session, cipher)
            masked = await vault.get_masked("tenant-1")
            with pytest.raises(CryptoError):
                await vault.get_credentials("tenant-1", "toyyibpay")

        assert masked["toyyibpay"].usable is False
        assert "secret_key" not in masked["toyyibpay"].fields

    async def test_undecryptable_row_is_not_treated_as_absent(self, db, cipher):
        foreign = CredentialCipher(OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        async with db.session() as session:
            await ProviderCredentialRepository(session).create(
                "tenant-1",
                "billplz",
                {"x_signature_key": foreign.encrypt("bp-xsig-key-5678"), "collection_id": "col_1"},
                is_active=True,
            )

        async with db.session() as session:
            with pytest.raises(CryptoError):
                await CredentialVault(session, cipher).find_credentials("tenant-1", "billplz")

    async def test_get_credentials_missing(self, db, cipher):
        async with db.session() as session:
            vault = CredentialVault(session, cipher)
            with pytest.raises(NotFoundError):
                await vault.get_credentials("tenant-1", "billplz")
            assert await vault.find_credentials("tenant-1", "billplz") is None


class TestCredentialRotation:
    """Tests for key rotation."""

    @pytest.fixture
    def old_cipher(self):
        return CredentialCipher(OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)

    @pytest.fixture
    def rotating_cipher(self):
        return CredentialCipher(ENCRYPTION_KEY, OLD_ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)

    async def test_rotate_reencrypts_under_current_key(self, db, old_cipher, rotating_cipher):
        async with db.session() as session:
            await CredentialVault(session, old_cipher).upsert(
                "tenant-1",
                "billplz",
                {
                    "api_key": "bp-api-key-00001234",
                    "x_signature_key": "bp-xsig-key-5678",
                    "collection_id": "col_1",
                },
                is_active=True,
            )

        async with db.session() as session:
            result = await CredentialVault(session, rotating_cipher).rotate_credentials(
                "tenant-1", "billplz"
            )
        assert result.rotated_fields == 2
        assert result.error is None

        current_only = CredentialCipher(ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)
        async with db.session() as session:
            creds = await CredentialVault(session, current_only).get_credentials("tenant-1", "billplz")
            row = await ProviderCredentialRepository(session).get("tenant-1", "billplz")
        assert creds.get("api_key") == "bp-api-key-00001234"
        assert creds.get("x_signature_key") == "bp-xsig-key-5678"
        assert row.version == 2

    async def test_rotate_twice_is_noop(self, db, old_cipher, rotating_cipher):
        async with db.session() as session:
            await CredentialVault(session, old_cipher).upsert(
                "tenant-1", "toyyibpay", {"secret_key": "ty-secret-abcdef1234"}
            )

        async with db.session() as session:
            first = await CredentialVault(session, rotating_cipher).rotate_credentials("tenant-1", "toyyibpay")
        async with db.session() as session:
            stored = (await ProviderCredentialRepository(session).get("tenant-1", "toyyibpay")).fields
        async with db.session() as session:
            second = await CredentialVault(session, rotating_cipher).rotate_credentials("tenant-1", "toyyibpay")
        async with db.session() as session:
            row = await ProviderCredentialRepository(session).get("tenant-1", "toyyibpay")

        assert first.rotated_fields == 1
        assert second.rotated_fields == 0
        assert second.skipped
        assert row.fields == stored

    async def test_conditional_write_rejects_stale_version(self, db, old_cipher):
        async with db.session() as session:
            await CredentialVault(session, old_cipher).upsert(
                "tenant-1", "toyyibpay", {"secret_key": "ty-secret-abcdef1234"}
            )
            row = await ProviderCredentialRepository(session).get("tenant-1", "toyyibpay")
            row_id = row.id

        async with db.session() as session:
            repo = ProviderCredentialRepository(session)
            assert await repo.update_fields_if_version(row_id, 1, {"secret_key": "changed"})
            assert not await repo.update_fields_if_version(row_id, 1, {"secret_key": "stale"})

    async def test_rotate_all_reports_per_row(self, db, old_cipher, rotating_cipher):
        unknown = CredentialCipher("unknown-key-zzzzzzzzzzzzzzzzzzzzzzzz", iterations=TEST_KDF_ITERATIONS)
        async with db.session() as session:
            await CredentialVault(session, old_cipher).upsert(
                "tenant-1", "toyyibpay", {"secret_key": "ty-secret-abcdef1234"}
            )
            await CredentialVault(session, unknown).upsert(
                "tenant-2", "toyyibpay", {"secret_key": "ty-secret-other-5678"}
            )

        async with db.session() as session:
            results = await CredentialVault(session, rotating_cipher).rotate_all()

        by_tenant = {r.tenant_id: r for r in results}
        assert by_tenant["tenant-1"].rotated_fields == 1
        assert by_tenant["tenant-2"].error is not None
        assert by_tenant["tenant-2"].rotated_fields == 0

    async def test_rotate_missing_row(self, db, rotating_cipher):
        async with db.session() as session:
            with pytest.raises(NotFoundError):
                await CredentialVault(session, rotating_cipher).rotate_credentials("tenant-1", "chip")
