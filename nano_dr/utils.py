"""Archiving, checksum and encryption helpers for backup artifacts."""

import asyncio
import hashlib
import os
import tarfile
from pathlib import Path
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ._utils import logger
from .errors import IntegrityError

CHUNK_SIZE = 1024 * 1024

# Encrypted artifact layout: MAGIC | salt | nonce | ciphertext | tag
ENCRYPTION_MAGIC = b"NDR1"
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
HEADER_SIZE = len(ENCRYPTION_MAGIC) + SALT_SIZE + NONCE_SIZE


def _create_archive_sync(source: Path, output_path: Path, arcname: str) -> int:
    with tarfile.open(output_path, "w:gz") as tar:
        tar.add(source, arcname=arcname)
    return output_path.stat().st_size


async def create_archive(source: Path, output_path: Path, arcname: str = ".") -> int:
    """Create tar.gz archive from a file or directory.

    Args:
        source: Directory (or file) to archive
        output_path: Output .tar.gz path
        arcname: Name of `source` inside the archive

    Returns:
        Size of created archive in bytes
    """
    logger.info(f"Creating archive: {output_path}")
    output_path.parent.mkdir(parents=True, exist_ok=True)

    archive_size = await asyncio.to_thread(_create_archive_sync, source, output_path, arcname)

    logger.info(f"Archive created: {archive_size:,} bytes")
    return archive_size


def _is_within(directory: Path, target: Path) -> bool:
    directory = directory.resolve()
    target = target.resolve()
    return target == directory or directory in target.parents


def _extract_archive_sync(
    archive_path: Path,
    output_dir: Path,
    member_filter: Optional[Callable[[tarfile.TarInfo], bool]],
) -> int:
    extracted = 0
    with tarfile.open(archive_path, "r:*") as tar:
        for member in tar.getmembers():
            if member.issym() or member.islnk() or member.isdev():
                logger.warning(f"Skipping link/device entry in archive: {member.name}")
                continue
            if not _is_within(output_dir, output_dir / member.name):
                raise IntegrityError(f"Archive entry escapes extraction directory: {member.name}")
            if member_filter is not None and member.isfile() and not member_filter(member):
                continue
            tar.extract(member, output_dir)
            extracted += 1
    return extracted


async def extract_archive(
    archive_path: Path,
    output_dir: Path,
    member_filter: Optional[Callable[[tarfile.TarInfo], bool]] = None,
) -> int:
    """Extract a tar archive (gzip-compressed or plain) to directory.

    Args:
        archive_path: Path to .tar.gz or .tar archive
        output_dir: Directory to extract to
        member_filter: Optional predicate; regular files it rejects are skipped

    Returns:
        Number of extracted entries

    Raises:
        IntegrityError: if the archive is unreadable or contains unsafe paths
    """
    logger.info(f"Extracting archive: {archive_path} to {output_dir}")
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        extracted = await asyncio.to_thread(_extract_archive_sync, archive_path, output_dir, member_filter)
    except (tarfile.TarError, EOFError, OSError) as e:
        if isinstance(e, FileNotFoundError):
            raise
        raise IntegrityError(f"Cannot read archive {archive_path.name}: {e}") from e

    logger.info("Archive extracted successfully")
    return extracted


def compute_checksum(file_path: Path) -> str:
    """Compute SHA-256 checksum of file.

    Args:
        file_path: Path to file

    Returns:
        SHA-256 checksum as hex string with 'sha256:' prefix
    """
    sha256 = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256.update(chunk)

    return f"sha256:{sha256.hexdigest()}"


def compute_directory_checksum(directory: Path) -> str:
    """Compute SHA-256 checksum of directory contents.

    Computes a deterministic checksum by hashing relative paths and file
    contents in sorted order.

    Args:
        directory: Directory to compute checksum for

    Returns:
        SHA-256 checksum as hex string with 'sha256:' prefix
    """
    sha256 = hashlib.sha256()

    for file_path in sorted(directory.rglob("*")):
        if file_path.is_file():
            relative_path = file_path.relative_to(directory)
            sha256.update(relative_path.as_posix().encode('utf-8'))

            with open(file_path, "rb") as f:
                for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                    sha256.update(chunk)

    return f"sha256:{sha256.hexdigest()}"


def verify_checksum(file_path: Path, expected_checksum: str) -> bool:
    """Verify file checksum.

    Args:
        file_path: Path to file
        expected_checksum: Expected checksum (with 'sha256:' prefix)

    Returns:
        True if checksum matches, False otherwise
    """
    return compute_checksum(file_path) == expected_checksum


def directory_size(directory: Path) -> int:
    return sum(p.stat().st_size for p in directory.rglob("*") if p.is_file())


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    return Scrypt(salt=salt, length=32, n=2**14, r=8, p=1).derive(passphrase.encode("utf-8"))


def is_encrypted(file_path: Path) -> bool:
    with open(file_path, "rb") as f:
        return f.read(len(ENCRYPTION_MAGIC)) == ENCRYPTION_MAGIC


def _encrypt_file_sync(file_path: Path, passphrase: str) -> None:
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(_derive_key(passphrase, salt)), modes.GCM(nonce)).encryptor()

    temp_path = file_path.with_name(file_path.name + ".enc")
    try:
        with open(file_path, "rb") as source, open(temp_path, "wb") as target:
            target.write(ENCRYPTION_MAGIC + salt + nonce)
            for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                target.write(encryptor.update(chunk))
            target.write(encryptor.finalize())
            target.write(encryptor.tag)
        os.replace(temp_path, file_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


async def encrypt_file(file_path: Path, passphrase: str) -> None:
    """Encrypt a file in place with AES-256-GCM.

    A fresh random salt and nonce are generated for every artifact and stored
    in the file header; the GCM tag is appended at the end.
    """
    await asyncio.to_thread(_encrypt_file_sync, file_path, passphrase)
    logger.debug(f"Encrypted artifact: {file_path}")


def _decrypt_file_sync(source_path: Path, target_path: Path, passphrase: str) -> None:
    total_size = source_path.stat().st_size
    if total_size < HEADER_SIZE + TAG_SIZE:
        raise IntegrityError(f"Encrypted artifact {source_path.name} is too small to contain header and tag")

    with open(source_path, "rb") as source:
        if source.read(len(ENCRYPTION_MAGIC)) != ENCRYPTION_MAGIC:
            raise IntegrityError(f"Artifact {source_path.name} is not an encrypted backup artifact")
        salt = source.read(SALT_SIZE)
        nonce = source.read(NONCE_SIZE)
        source.seek(total_size - TAG_SIZE)
        tag = source.read(TAG_SIZE)
        source.seek(HEADER_SIZE)

        decryptor = Cipher(algorithms.AES(_derive_key(passphrase, salt)), modes.GCM(nonce, tag)).decryptor()
        remaining = total_size - HEADER_SIZE - TAG_SIZE
        try:
            with open(target_path, "wb") as target:
                while remaining > 0:
                    chunk = source.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    target.write(decryptor.update(chunk))
                target.write(decryptor.finalize())
        except InvalidTag as e:
            target_path.unlink(missing_ok=True)
            raise IntegrityError(
                f"Authentication failed for {source_path.name}: wrong key or corrupted artifact"
            ) from e


async def decrypt_file(source_path: Path, target_path: Path, passphrase: str) -> None:
    """Decrypt an artifact produced by `encrypt_file` into `target_path`.

    Raises:
        IntegrityError: on a malformed header, wrong key or tampered content
    """
    await asyncio.to_thread(_decrypt_file_sync, source_path, target_path, passphrase)
    logger.debug(f"Decrypted artifact: {source_path} -> {target_path}")


def write_text_atomic(path: Path, content: str) -> None:
    """Write `content` so readers see either the old or the new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp")
    with open(temp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp_path, path)
