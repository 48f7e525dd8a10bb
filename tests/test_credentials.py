"""Tests for the credential store layout, duplicate cleanup and encryption."""

import asyncio
import json

import pytest
from conftest import fail_reads

from whatsapp_sessions.exceptions import CredentialInvalidError, StorageError
from whatsapp_sessions.models import UserConfig
from whatsapp_sessions.storage import (
    CredentialCipher,
    CredentialStore,
    config_path,
    credential_path,
)

KEY = "15551230000"


def fast_cipher(passphrase="secret"):
    return CredentialCipher(passphrase, memory_cost=64, iterations=1, lanes=1)


def envelope(credential, written_at):
    return json.dumps(
        {"version": 1, "key": KEY, "written_at": written_at, "credential": credential}
    ).encode()


class TestCredentials:
    """Test save, load and delete."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, credentials, store):
        """Test a saved credential is wrapped in an envelope and read back."""
        await credentials.save_credential("+1 555 123 0000", {"me": KEY})

        stored = json.loads((await store.get(credential_path(KEY))).data)
        assert stored["key"] == KEY
        assert isinstance(stored["written_at"], int)
        assert await credentials.load_credential(KEY) == {"me": KEY}

    @pytest.mark.asyncio
    async def test_load_missing(self, credentials):
        """Test nothing stored loads as None."""
        assert await credentials.load_credential(KEY) is None

    @pytest.mark.asyncio
    async def test_load_bare_legacy_blob(self, credentials, store):
        """Test a credential written without an envelope still loads."""
        await store.put(credential_path(KEY), b'{"me": "legacy"}')

        assert await credentials.load_credential(KEY) == {"me": "legacy"}

    @pytest.mark.asyncio
    async def test_load_corrupt(self, credentials, store):
        """Test unreadable blobs raise CredentialInvalidError."""
        await store.put(credential_path(KEY), b"\x00garbage")

        with pytest.raises(CredentialInvalidError):
            await credentials.load_credential(KEY)

    @pytest.mark.asyncio
    async def test_load_retries_store_outage(self, credentials, store):
        """Test a read that fails once is retried and succeeds."""
        await credentials.save_credential(KEY, {"me": KEY})
        fail_reads(store, 1)

        assert await credentials.load_credential(KEY) == {"me": KEY}

    @pytest.mark.asyncio
    async def test_load_store_down(self, credentials, store):
        """Test a store that stays down raises StorageError after the retries."""
        await credentials.save_credential(KEY, {"me": KEY})
        fail_reads(store, 10)

        with pytest.raises(StorageError):
            await credentials.load_credential(KEY)

    @pytest.mark.asyncio
    async def test_concurrent_saves_serialized(self, credentials):
        """Test concurrent saves for one key all land without conflicts."""
        await asyncio.gather(
            *(credentials.save_credential(KEY, {"n": i}) for i in range(10))
        )

        loaded = await credentials.load_credential(KEY)
        assert loaded["n"] in range(10)

    @pytest.mark.asyncio
    async def test_delete_session(self, credentials, store):
        """Test every blob of the key goes and the number is forgotten."""
        await credentials.save_credential(KEY, {"me": KEY})
        await store.put(f"session/empire_{KEY}_1000.json", b"{}")
        await credentials.save_user_config(KEY, UserConfig())
        await credentials.remember_number(KEY)
        await credentials.save_credential("15550000001", {"me": "other"})

        deleted = await credentials.delete_session(KEY)

        assert sorted(deleted) == sorted(
            [credential_path(KEY), f"session/empire_{KEY}_1000.json", config_path(KEY)]
        )
        assert await store.list("session/") == [credential_path("15550000001")]
        assert await credentials.known_numbers() == []

    @pytest.mark.asyncio
    async def test_per_key_state_released(self, credentials):
        """Test pairing and deleting many numbers leaves no per-key state behind."""
        keys = [f"155500{i:05d}" for i in range(20)]
        for key in keys:
            await credentials.save_credential(key, {"me": key})
            await credentials.load_user_config(key)
        for key in keys:
            await credentials.delete_session(key)

        assert len(credentials._locks) == 0
        assert len(credentials._config_cache) == 0

    @pytest.mark.asyncio
    async def test_list_identity_keys(self, credentials, store):
        """Test keys are collected from every credential naming scheme."""
        await credentials.save_credential("15550000002", {})
        await store.put("session/creds_15550000001_1700.json", b"{}")
        await store.put("session/empire_15550000003_1700.json", b"{}")
        await store.put("session/config_15550000004.json", b"{}")

        assert await credentials.list_identity_keys() == [
            "15550000001",
            "15550000002",
            "15550000003",
        ]


class TestCleanupDuplicates:
    """Test collapsing duplicate credential blobs."""

    @pytest.mark.asyncio
    async def test_newest_promoted_to_canonical(self, credentials, store):
        """Test the most recent blob survives under the canonical name."""
        await store.put(credential_path(KEY), envelope({"v": "canonical"}, 1000))
        await store.put(f"session/creds_{KEY}_2000.json", envelope({"v": "newest"}, 3000))
        await store.put(f"session/empire_{KEY}_2500.json", b'{"v": "named"}')

        deleted = await credentials.cleanup_duplicates(KEY)

        assert sorted(deleted) == [
            f"session/creds_{KEY}_2000.json",
            f"session/empire_{KEY}_2500.json",
        ]
        assert await store.list("session/") == [credential_path(KEY)]
        assert await credentials.load_credential(KEY) == {"v": "newest"}

    @pytest.mark.asyncio
    async def test_canonical_kept_when_newest(self, credentials, store):
        """Test an older duplicate is removed and the canonical blob untouched."""
        await store.put(credential_path(KEY), envelope({"v": "canonical"}, 5000))
        await store.put(f"session/creds_{KEY}_2000.json", b'{"v": "old"}')
        before = await store.get(credential_path(KEY))

        await credentials.cleanup_duplicates(KEY)

        after = await store.get(credential_path(KEY))
        assert after.version == before.version
        assert await store.list("session/") == [credential_path(KEY)]

    @pytest.mark.asyncio
    async def test_idempotent(self, credentials, store):
        """Test a second cleanup changes nothing."""
        await store.put(f"session/creds_{KEY}_1000.json", b'{"v": 1}')
        await store.put(f"session/creds_{KEY}_2000.json", b'{"v": 2}')

        await credentials.cleanup_duplicates(KEY)
        snapshot = {n: (await store.get(n)).version for n in await store.list("session/")}

        assert await credentials.cleanup_duplicates(KEY) == []
        assert {n: (await store.get(n)).version for n in await store.list("session/")} == snapshot
        assert await credentials.load_credential(KEY) == {"v": 2}

    @pytest.mark.asyncio
    async def test_other_keys_untouched(self, credentials, store):
        """Test cleanup only looks at blobs of its own key."""
        await store.put(f"session/creds_{KEY}_1000.json", b"{}")
        await store.put("session/creds_15550000001_1000.json", b"{}")
        await store.put(f"session/creds_{KEY}9_1000.json", b"{}")

        await credentials.cleanup_duplicates(KEY)

        names = await store.list("session/")
        assert "session/creds_15550000001_1000.json" in names
        assert f"session/creds_{KEY}9_1000.json" in names

    @pytest.mark.asyncio
    async def test_nothing_stored(self, credentials):
        """Test cleanup of a key with no blobs."""
        assert await credentials.cleanup_duplicates(KEY) == []


class TestEncryption:
    """Test credentials encrypted at rest."""

    @pytest.mark.asyncio
    async def test_encrypted_round_trip(self, store):
        """Test the stored blob holds no plaintext and decrypts on load."""
        credentials = CredentialStore(store, cipher=fast_cipher(), write_base_delay=0)

        await credentials.save_credential(KEY, {"noiseKey": "very-secret"})

        raw = (await store.get(credential_path(KEY))).data
        assert b"very-secret" not in raw
        assert CredentialCipher.is_encrypted(json.loads(raw)["credential"])
        assert await credentials.load_credential(KEY) == {"noiseKey": "very-secret"}

    @pytest.mark.asyncio
    async def test_other_instance_same_passphrase(self, store):
        """Test a new process with the same passphrase can read old blobs."""
        writer = CredentialStore(store, cipher=fast_cipher(), write_base_delay=0)
        await writer.save_credential(KEY, {"me": KEY})

        reader = CredentialStore(store, cipher=fast_cipher(), write_base_delay=0)

        assert await reader.load_credential(KEY) == {"me": KEY}

    @pytest.mark.asyncio
    async def test_wrong_passphrase(self, store):
        """Test a wrong passphrase cannot read the credential."""
        writer = CredentialStore(store, cipher=fast_cipher("right"), write_base_delay=0)
        await writer.save_credential(KEY, {"me": KEY})

        reader = CredentialStore(store, cipher=fast_cipher("wrong"), write_base_delay=0)

        with pytest.raises(CredentialInvalidError):
            await reader.load_credential(KEY)

    @pytest.mark.asyncio
    async def test_encrypted_without_passphrase(self, store):
        """Test an encrypted blob needs a configured passphrase."""
        writer = CredentialStore(store, cipher=fast_cipher(), write_base_delay=0)
        await writer.save_credential(KEY, {"me": KEY})

        with pytest.raises(CredentialInvalidError):
            await CredentialStore(store).load_credential(KEY)

    def test_empty_passphrase(self):
        """Test a passphrase is required."""
        with pytest.raises(ValueError):
            CredentialCipher("")


class TestUserConfigAndNumbers:
    """Test per-session config and the known-numbers list."""

    @pytest.mark.asyncio
    async def test_defaults_when_missing(self, credentials):
        """Test a key without config gets the defaults."""
        config = await credentials.load_user_config(KEY)

        assert config == UserConfig()
        assert not await credentials.has_user_config(KEY)

    @pytest.mark.asyncio
    async def test_saved_with_bridge_field_names(self, credentials, store):
        """Test the config is stored with its upper-case field names."""
        await credentials.save_user_config(KEY, UserConfig(auto_recording=False))

        stored = json.loads((await store.get(config_path(KEY))).data)
        assert stored["AUTO_RECORDING"] is False
        assert (await credentials.load_user_config(KEY)).auto_recording is False

    @pytest.mark.asyncio
    async def test_config_cached(self, store):
        """Test config reads are served from the cache."""
        credentials = CredentialStore(store, cache_ttl=300, write_base_delay=0)
        await credentials.load_user_config(KEY)
        await store.put(config_path(KEY), json.dumps({"AUTO_RECORDING": False}).encode())

        assert (await credentials.load_user_config(KEY)).auto_recording is True

    @pytest.mark.asyncio
    async def test_invalid_config_uses_defaults(self, credentials, store):
        """Test an unreadable config falls back to defaults."""
        await store.put(config_path(KEY), b"{broken")

        assert await credentials.load_user_config(KEY) == UserConfig()

    @pytest.mark.asyncio
    async def test_numbers(self, credentials):
        """Test remembering and forgetting numbers."""
        await credentials.remember_number("15550000001")
        await credentials.remember_number("15550000002")
        await credentials.remember_number("15550000001")
        await credentials.forget_number("15550000002")

        assert await credentials.known_numbers() == ["15550000001"]

    @pytest.mark.asyncio
    async def test_concurrent_remember(self, credentials):
        """Test concurrent additions are all kept."""
        keys = [f"1555000000{i}" for i in range(5)]

        await asyncio.gather(*(credentials.remember_number(k) for k in keys))

        assert sorted(await credentials.known_numbers()) == keys

    @pytest.mark.asyncio
    async def test_numbers_file_invalid(self, store):
        """Test a corrupt numbers file reads as empty."""
        await store.put("numbers.json", b"not json")

        assert await CredentialStore(store).known_numbers() == []
