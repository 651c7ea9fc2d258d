"""
Tests for per-video key derivation and storage
"""
import hashlib

import pytest

from worker.security.keys import KEY_FILE_NAME, KEY_INFO_FILE_NAME, KeyManager, generate_key_id
from worker.utils.errors import KeyManagementError, KeyNotFoundError


@pytest.mark.unit
class TestKeyDerivation:
    """Key derivation is a pure function of seed, salt prefix, video id and rounds."""

    def test_derive_key_is_deterministic(self, key_manager):
        assert key_manager.derive_key("video-1") == key_manager.derive_key("video-1")

    def test_derive_key_length(self, key_manager):
        assert len(key_manager.derive_key("video-1")) == 16

    def test_derive_key_differs_per_video(self, key_manager):
        assert key_manager.derive_key("video-1") != key_manager.derive_key("video-2")

    def test_derive_key_matches_pbkdf2(self, tmp_path):
        manager = KeyManager(tmp_path, master_seed="seed", salt_prefix="prefix", rounds=10)
        salt = hashlib.sha256(b"prefixabc").digest()
        expected = hashlib.pbkdf2_hmac("sha256", b"seed", salt, 10, dklen=16)
        assert manager.derive_key("abc") == expected

    def test_derive_key_depends_on_seed(self, tmp_path):
        first = KeyManager(tmp_path, master_seed="seed-a", salt_prefix="p", rounds=10)
        second = KeyManager(tmp_path, master_seed="seed-b", salt_prefix="p", rounds=10)
        assert first.derive_key("abc") != second.derive_key("abc")

    def test_empty_master_seed_rejected(self, tmp_path):
        with pytest.raises(KeyManagementError):
            KeyManager(tmp_path, master_seed="", salt_prefix="p")

    def test_generate_key_id(self):
        key_id = generate_key_id("video-1")
        assert key_id == hashlib.sha256(b"video-1").digest()[:16].hex()
        assert len(key_id) == 32


@pytest.mark.unit
class TestKeyStorage:
    """Key files on disk."""

    @pytest.mark.asyncio
    async def test_generate_and_store_key(self, key_manager, settings):
        result = await key_manager.generate_and_store_key("video-1")

        key_path = settings.VIDEOS_DIR / "video-1" / KEY_FILE_NAME
        assert result.key_path == str(key_path)
        assert key_path.read_bytes() == result.key
        assert len(result.key) == 16
        assert result.key_id == generate_key_id("video-1")

        key_info = (settings.VIDEOS_DIR / "video-1" / KEY_INFO_FILE_NAME).read_text()
        assert key_info == f"/api/video-key/video-1\n{key_path}\n"

    @pytest.mark.asyncio
    async def test_retrieve_key_roundtrip(self, key_manager):
        result = await key_manager.generate_and_store_key("video-1")
        assert await key_manager.retrieve_key("video-1") == result.key

    @pytest.mark.asyncio
    async def test_retrieve_missing_key(self, key_manager):
        with pytest.raises(KeyNotFoundError) as exc_info:
            await key_manager.retrieve_key("missing")
        assert exc_info.value.code == "KEY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_retrieve_key_with_wrong_length(self, key_manager):
        key_path = key_manager.key_path("video-1")
        key_path.parent.mkdir(parents=True)
        key_path.write_bytes(b"short")

        with pytest.raises(KeyManagementError) as exc_info:
            await key_manager.retrieve_key("video-1")
        assert not isinstance(exc_info.value, KeyNotFoundError)

    @pytest.mark.asyncio
    async def test_key_exists(self, key_manager):
        assert not await key_manager.key_exists("video-1")
        await key_manager.generate_and_store_key("video-1")
        assert await key_manager.key_exists("video-1")

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_key_info(self, key_manager):
        await key_manager.generate_and_store_key("video-1")

        await key_manager.cleanup_temp_files("video-1")

        assert not key_manager.key_info_path("video-1").exists()
        assert key_manager.key_path("video-1").exists()

    @pytest.mark.asyncio
    async def test_cleanup_without_key_info(self, key_manager):
        await key_manager.cleanup_temp_files("never-created")


@pytest.mark.unit
class TestEncryptionConfig:

    @pytest.mark.asyncio
    async def test_config_from_stored_key(self, key_manager):
        result = await key_manager.generate_and_store_key("video-1")

        config = await key_manager.create_encryption_config("video-1", scheme="cbcs")

        assert config.scheme == "cbcs"
        assert config.key == result.key.hex()
        assert config.key_id == result.key_id
        assert config.drm_label == "CENC"

    @pytest.mark.asyncio
    async def test_config_without_encryption(self, key_manager):
        config = await key_manager.create_encryption_config("video-1", scheme="none")
        assert config.scheme == "none"
        assert config.key == ""

    @pytest.mark.asyncio
    async def test_config_requires_stored_key(self, key_manager):
        with pytest.raises(KeyNotFoundError):
            await key_manager.create_encryption_config("video-1")
