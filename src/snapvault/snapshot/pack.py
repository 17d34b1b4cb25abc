"""
Backup archives taken before a migration rewrites snapshot directories.

All directories that need a structural rewrite are packed into one
timestamped ZIP before the first one is touched. The archive is assembled
in a temporary directory and moved into place only once complete, so a
failed backup never leaves a half-written archive that looks valid.
Optionally the archive is encrypted with AES-256-GCM.
"""

import hashlib
import logging
import os
import shutil
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import BackupFailed


logger = logging.getLogger(__name__)


BACKUP_PREFIX = "SnapVault_Backup_"
NONCE_SIZE = 12


def backup_file_name(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now()
    return f"{BACKUP_PREFIX}{moment.strftime('%Y-%m-%d_%H-%M-%S')}.zip"


def _aes_key(key: bytes) -> bytes:
    # AES-256 needs exactly 32 bytes
    if len(key) != 32:
        return hashlib.sha256(key).digest()
    return key


def get_backup_key(key_env_var: str) -> Optional[bytes]:
    """Read the backup encryption key from an environment variable."""
    value = os.environ.get(key_env_var)
    return value.encode("utf-8") if value else None


class MigrationBackupPacker:
    """
    Packs snapshot directories into a single backup archive.

    Example:
        >>> packer = MigrationBackupPacker(working_dir)
        >>> archive = packer.pack([working_dir / "Alice", working_dir / "Bob"])
    """

    def __init__(
        self,
        output_dir: Path,
        encrypt: bool = False,
        encryption_key: Optional[bytes] = None,
    ):
        """
        Initialize the packer.

        Args:
            output_dir: Directory the finished archive is moved into
            encrypt: Whether to encrypt the archive
            encryption_key: Encryption key (required if encrypt=True)
        """
        self.output_dir = Path(output_dir)
        self.encrypt = encrypt
        self.encryption_key = encryption_key

    def pack(self, directories: Iterable[Path], moment: Optional[datetime] = None) -> Path:
        """
        Pack every file of ``directories`` into one archive.

        Entries are stored as ``<directory name>/<relative path>``.

        Returns:
            Path to the created archive (``.zip`` or ``.zip.enc``)

        Raises:
            BackupFailed: On any I/O or encryption failure
        """
        directories: List[Path] = [Path(d) for d in directories]
        archive_name = backup_file_name(moment)

        if self.encrypt and not self.encryption_key:
            raise BackupFailed("Backup encryption is enabled but no key is available")

        try:
            with tempfile.TemporaryDirectory(prefix="snapvault-backup-") as tmp:
                staging = Path(tmp) / archive_name
                file_count = self._write_archive(staging, directories)

                if self.encrypt:
                    staging = self._encrypt_archive(staging)

                self.output_dir.mkdir(parents=True, exist_ok=True)
                target = self.output_dir / staging.name
                shutil.move(str(staging), str(target))
        except BackupFailed:
            raise
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise BackupFailed(f"Could not create migration backup: {e}", self.output_dir / archive_name)

        logger.info(
            f"Backed up {len(directories)} snapshot(s), {file_count} files, to {target}"
        )
        return target

    def _write_archive(self, archive_path: Path, directories: List[Path]) -> int:
        count = 0
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for directory in directories:
                if not directory.is_dir():
                    raise BackupFailed(f"Snapshot directory disappeared: {directory}", archive_path)
                for file_path in sorted(directory.rglob("*")):
                    if file_path.is_file():
                        arcname = Path(directory.name) / file_path.relative_to(directory)
                        zf.write(file_path, arcname.as_posix())
                        count += 1
                        logger.debug(f"  Added: {arcname}")
        return count

    def _encrypt_archive(self, archive_path: Path) -> Path:
        """
        Encrypt an archive using AES-256-GCM.

        Output layout is nonce (12 bytes) followed by the ciphertext.
        """
        key = _aes_key(self.encryption_key)
        data = archive_path.read_bytes()

        nonce = os.urandom(NONCE_SIZE)
        encrypted = AESGCM(key).encrypt(nonce, data, None)

        encrypted_path = archive_path.with_suffix(".zip.enc")
        with open(encrypted_path, "wb") as f:
            f.write(nonce + encrypted)

        archive_path.unlink()
        logger.info(f"Encrypted backup archive: {encrypted_path.name}")
        return encrypted_path


def decrypt_backup(archive_path: Path, encryption_key: bytes) -> bytes:
    """Decrypt a ``.zip.enc`` backup and return the ZIP bytes."""
    data = Path(archive_path).read_bytes()
    nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
    return AESGCM(_aes_key(encryption_key)).decrypt(nonce, ciphertext, None)
