"""Tests for the cached, encrypted gateway config store."""

import pytest
from cryptography.fernet import Fernet

from qr_payments.config_store import ENCRYPTION_KEY_ENV, MASKED_VALUE, ConfigStore
from qr_payments.database import ConfigRepository
from qr_payments.exceptions import ConfigurationError
from qr_payments.gateways import PLACEHOLDER, FastPayCredentials, GatewayKind

from conftest import CLICK_CONFIG, FASTPAY_CONFIG, seed_config


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestReadWrite:
    """Tests for get, set and get_all."""

    async def test_set_and_get(self, session_factory):
        store = ConfigStore(session_factory, GatewayKind.FASTPAY)
        await store.set("service_id", "777")

        assert await store.get("service_id") == "777"
        assert await store.get("missing") is None

    async def test_encrypted_value_is_stored_as_ciphertext(self, session_factory):
        """Secrets are encrypted at rest, decrypted on read and masked in listings."""
        store = ConfigStore(session_factory, GatewayKind.FASTPAY)
        await store.set("secret_key", "s3cr3t", encrypt=True)

        async with session_factory() as session:
            item = await ConfigRepository(session).get("fastpay", "secret_key")
        assert item.is_encrypted is True
        assert item.value != "s3cr3t"

        assert await store.get("secret_key") == "s3cr3t"
        listed = {entry["key"]: entry for entry in await store.get_all()}
        assert listed["secret_key"]["value"] == MASKED_VALUE

    async def test_gateways_are_isolated(self, session_factory):
        await seed_config(session_factory, GatewayKind.FASTPAY, FASTPAY_CONFIG)
        await seed_config(session_factory, GatewayKind.CLICK_PASS, CLICK_CONFIG)

        fastpay = ConfigStore(session_factory, GatewayKind.FASTPAY)
        click = ConfigStore(session_factory, GatewayKind.CLICK_PASS)

        assert await fastpay.get("service_id") == "777"
        assert await click.get("service_id") == "101"
        assert await fastpay.get("merchant_id") is None

    async def test_encrypt_without_key_fails(self, session_factory, monkeypatch):
        monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)
        store = ConfigStore(session_factory, GatewayKind.FASTPAY)

        with pytest.raises(ConfigurationError):
            await store.set("secret_key", "s3cr3t", encrypt=True)

        # Placeholders are never encrypted, so a reset works without a key
        await store.set("secret_key", PLACEHOLDER, encrypt=True)
        assert await store.get("secret_key") == PLACEHOLDER

    async def test_wrong_key_cannot_decrypt(self, session_factory):
        writer = ConfigStore(session_factory, GatewayKind.FASTPAY, encryption_key=Fernet.generate_key().decode())
        await writer.set("secret_key", "s3cr3t", encrypt=True)

        reader = ConfigStore(session_factory, GatewayKind.FASTPAY, encryption_key=Fernet.generate_key().decode())
        with pytest.raises(ConfigurationError):
            await reader.get("secret_key")


class TestCache:
    """Tests for the TTL cache."""

    async def test_values_are_served_from_cache_until_ttl(self, session_factory):
        clock = FakeClock()
        await seed_config(session_factory, GatewayKind.FASTPAY, FASTPAY_CONFIG)
        store = ConfigStore(session_factory, GatewayKind.FASTPAY, ttl_seconds=300, clock=clock)

        first = await store.load()
        await store.set("service_id", "888")

        clock.now += 299
        assert (await store.load()).service_id == 777
        assert first.service_id == 777

        clock.now += 2
        assert (await store.load()).service_id == 888

    async def test_invalidate_forces_reload(self, session_factory):
        await seed_config(session_factory, GatewayKind.FASTPAY, FASTPAY_CONFIG)
        store = ConfigStore(session_factory, GatewayKind.FASTPAY, clock=FakeClock())

        await store.load()
        await store.set("service_id", "888")
        store.invalidate()

        assert (await store.load()).service_id == 888

    async def test_validate_bypasses_cache(self, session_factory):
        store = await seed_config(session_factory, GatewayKind.FASTPAY, FASTPAY_CONFIG)
        await store.load()

        await store.set("service_id", PLACEHOLDER)

        validation = await store.validate()
        assert validation.is_valid is False
        assert validation.missing_keys == ["service_id"]


class TestLoadAndValidate:
    """Tests for load, validate and reset_to_defaults."""

    async def test_load_returns_typed_credentials_with_defaults(self, session_factory):
        store = await seed_config(session_factory, GatewayKind.FASTPAY, FASTPAY_CONFIG)

        credentials = await store.load()

        assert isinstance(credentials, FastPayCredentials)
        assert credentials.service_id == 777
        assert credentials.secret_key == "fastpay-secret"
        assert credentials.cashbox_code_prefix == "RockPoint"
        assert credentials.request_timeout_ms == 15000
        assert credentials.max_retry_attempts == 3

    async def test_load_without_config_fails(self, session_factory):
        store = ConfigStore(session_factory, GatewayKind.FASTPAY)

        with pytest.raises(ConfigurationError) as exc_info:
            await store.load()

        assert set(exc_info.value.details["missing_keys"]) == {
            "merchant_service_user_id",
            "secret_key",
            "service_id",
        }

    async def test_schema_errors_are_reported(self, session_factory):
        store = await seed_config(
            session_factory, GatewayKind.FASTPAY, {**FASTPAY_CONFIG, "service_id": "not-a-number"}
        )

        validation = await store.validate()

        assert validation.is_valid is False
        assert validation.missing_keys == []
        assert any(error.startswith("service_id") for error in validation.errors)

    async def test_reset_writes_placeholders_and_defaults(self, session_factory):
        store = ConfigStore(session_factory, GatewayKind.FASTPAY)

        await store.reset_to_defaults()

        listed = {entry["key"]: entry for entry in await store.get_all()}
        assert listed["secret_key"]["value"] == PLACEHOLDER
        assert listed["secret_key"]["is_encrypted"] is True
        assert listed["api_base_url"]["value"] == "https://mobile.apelsin.uz"
        assert listed["cashbox_code_prefix"]["value"] == "RockPoint"
        assert listed["merchant_service_user_id"]["description"]

        validation = await store.validate()
        assert validation.is_valid is False
        assert len(validation.missing_keys) == 3
        assert "Missing required configuration: secret_key" in validation.errors

    async def test_reset_then_configure(self, session_factory):
        """Defaults written by a reset are kept once the required keys are set."""
        store = ConfigStore(session_factory, GatewayKind.FASTPAY)
        await store.reset_to_defaults()
        for key in ("merchant_service_user_id", "secret_key", "service_id"):
            await store.set(key, FASTPAY_CONFIG[key], encrypt=key == "secret_key")

        credentials = await store.load()

        assert credentials.api_base_url == "https://mobile.apelsin.uz"
        assert credentials.secret_key == "fastpay-secret"
