"""
Per-video encryption key management.

Keys are derived with PBKDF2-HMAC-SHA256 from a master seed and a salt
built from the video id, so the same video always gets the same key. The
derived key is still written to ``key.bin`` because the packager and the
key delivery endpoint read key bytes from disk.
"""
import hashlib
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel

from worker.config import Settings
from worker.utils.errors import KeyManagementError, KeyNotFoundError

logger = structlog.get_logger()

KEY_LENGTH = 16
KEY_FILE_NAME = "key.bin"
KEY_INFO_FILE_NAME = "keyinfo.txt"


class KeyGenerationResult(BaseModel):
    key: bytes
    key_id: str
    key_path: str
    key_info_file: str


class EncryptionConfig(BaseModel):
    scheme: str
    key: str = ""
    key_id: str = ""
    drm_label: str = "CENC"


def generate_key_id(video_id: str) -> str:
    """Key id: first 16 bytes of SHA-256(video_id), hex encoded."""
    return hashlib.sha256(video_id.encode("utf-8")).digest()[:KEY_LENGTH].hex()


class KeyManager:
    """Derives, stores and retrieves per-video AES-128 keys."""

    def __init__(
        self,
        videos_dir: Path,
        master_seed: str,
        salt_prefix: str,
        rounds: int = 100000,
        key_url_template: str = "/api/video-key/{video_id}",
    ):
        if not master_seed:
            raise KeyManagementError("Master seed must not be empty")
        self.videos_dir = Path(videos_dir)
        self.master_seed = master_seed
        self.salt_prefix = salt_prefix
        self.rounds = rounds
        self.key_url_template = key_url_template

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyManager":
        return cls(
            videos_dir=settings.VIDEOS_DIR,
            master_seed=settings.MASTER_SEED,
            salt_prefix=settings.KEY_SALT_PREFIX,
            rounds=settings.KEY_DERIVATION_ROUNDS,
            key_url_template=settings.KEY_URL_TEMPLATE,
        )

    def derive_key(self, video_id: str) -> bytes:
        salt = hashlib.sha256(f"{self.salt_prefix}{video_id}".encode("utf-8")).digest()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.rounds,
        )
        return kdf.derive(self.master_seed.encode("utf-8"))

    def key_path(self, video_id: str) -> Path:
        return self.videos_dir / video_id / KEY_FILE_NAME

    def key_info_path(self, video_id: str) -> Path:
        return self.videos_dir / video_id / KEY_INFO_FILE_NAME

    async def generate_and_store_key(self, video_id: str) -> KeyGenerationResult:
        """Derive the key for a video and persist key.bin plus keyinfo.txt."""
        key = self.derive_key(video_id)
        key_path = self.key_path(video_id)
        key_info_path = self.key_info_path(video_id)

        try:
            await aiofiles.os.makedirs(key_path.parent, exist_ok=True)
            async with aiofiles.open(key_path, "wb") as f:
                await f.write(key)

            key_url = self.key_url_template.format(video_id=video_id)
            async with aiofiles.open(key_info_path, "w") as f:
                await f.write(f"{key_url}\n{key_path}\n")
        except OSError as e:
            logger.error("Failed to store encryption key", video_id=video_id, error=str(e))
            raise KeyManagementError(f"Failed to store key for video {video_id}: {e}", video_id) from e

        logger.info("Encryption key generated", video_id=video_id, key_path=str(key_path))
        return KeyGenerationResult(
            key=key,
            key_id=generate_key_id(video_id),
            key_path=str(key_path),
            key_info_file=str(key_info_path),
        )

    async def retrieve_key(self, video_id: str) -> bytes:
        key_path = self.key_path(video_id)
        try:
            async with aiofiles.open(key_path, "rb") as f:
                key = await f.read()
        except FileNotFoundError as e:
            raise KeyNotFoundError(video_id) from e
        except OSError as e:
            raise KeyManagementError(f"Failed to read key for video {video_id}: {e}", video_id) from e

        if len(key) != KEY_LENGTH:
            raise KeyManagementError(
                f"Invalid key length for video {video_id}: expected {KEY_LENGTH} bytes, got {len(key)}",
                video_id,
            )
        return key

    async def key_exists(self, video_id: str) -> bool:
        return await aiofiles.os.path.isfile(self.key_path(video_id))

    async def cleanup_temp_files(self, video_id: str) -> None:
        """Remove keyinfo.txt; key.bin stays for key delivery."""
        key_info_path = self.key_info_path(video_id)
        try:
            await aiofiles.os.remove(key_info_path)
            logger.debug("Removed key info file", video_id=video_id)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove key info file", video_id=video_id, error=str(e))

    async def create_encryption_config(
        self,
        video_id: str,
        scheme: str = "cenc",
        drm_label: str = "CENC",
        key: Optional[bytes] = None,
    ) -> EncryptionConfig:
        if scheme == "none":
            return EncryptionConfig(scheme="none", drm_label=drm_label)
        if key is None:
            key = await self.retrieve_key(video_id)
        return EncryptionConfig(
            scheme=scheme,
            key=key.hex(),
            key_id=generate_key_id(video_id),
            drm_label=drm_label,
        )
