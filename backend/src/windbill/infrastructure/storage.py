"""
Archive for generated payment files.

Every SEPA document handed to the bank is kept so a later dispute can be
answered with the exact bytes that were exported.

Design Decisions:
- Content-addressable storage using the SHA-256 of the document
- One directory per tenant, fanned out by hash prefix
- Atomic writes (temp file, then rename)
- Integrity check on retrieval
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from windbill.config import get_settings

logger = logging.getLogger(__name__)

HASH_PREFIX = "sha256:"


def compute_document_hash(content: bytes) -> str:
    """
    SHA-256 of raw document bytes.

    Returns:
        Hex digest prefixed with 'sha256:'
    """
    if not content:
        raise ValueError("Cannot hash empty content")
    return f"{HASH_PREFIX}{hashlib.sha256(content).hexdigest()}"


def verify_hash(content: bytes, expected_hash: str) -> bool:
    """Check content against a 'sha256:' prefixed hash."""
    if not expected_hash.startswith(HASH_PREFIX):
        raise ValueError(f"Invalid hash format, expected '{HASH_PREFIX}' prefix: {expected_hash}")
    return compute_document_hash(content) == expected_hash


@dataclass
class ArchivedFile:
    """Where an exported document was stored."""
    path: str
    document_hash: str
    size_bytes: int


class ExportArchive:
    """
    Local filesystem archive.

    Layout:
        archive_path/
            <tenant_id>/
                ab/
                    abcd1234....xml
    """

    def __init__(self, base_path: Path | None = None) -> None:
        settings = get_settings()
        self.base_path = Path(base_path or settings.archive_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Export archive at {self.base_path}")

    def _resolve(self, relative_path: str) -> Path:
        file_path = (self.base_path / relative_path).resolve()
        if not file_path.is_relative_to(self.base_path):
            raise ValueError("Path traversal not allowed")
        return file_path

    async def store(self, content: bytes, tenant_id: str, suffix: str = ".xml") -> ArchivedFile:
        """
        Store a document under its content hash.

        Storing identical bytes twice yields the same path.
        """
        document_hash = compute_document_hash(content)
        hash_value = document_hash.removeprefix(HASH_PREFIX)
        file_path = self._resolve(f"{tenant_id}/{hash_value[:2]}/{hash_value}{suffix}")
        file_path.parent.mkdir(parents=True, exist_ok=True)

        if not file_path.exists():
            temp_path = file_path.with_suffix(".tmp")
            try:
                temp_path.write_bytes(content)
                temp_path.replace(file_path)
            except OSError:
                temp_path.unlink(missing_ok=True)
                raise

        relative = str(file_path.relative_to(self.base_path))
        logger.info(f"Archived {len(content)} bytes as {relative}")
        return ArchivedFile(path=relative, document_hash=document_hash, size_bytes=len(content))

    async def retrieve(self, path: str, expected_hash: str | None = None) -> bytes:
        """
        Read an archived document.

        Raises:
            FileNotFoundError: If nothing is stored at ``path``
            ValueError: On path traversal or when the content no longer
                matches ``expected_hash``
        """
        file_path = self._resolve(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Archived document not found: {path}")

        content = file_path.read_bytes()
        if expected_hash and not verify_hash(content, expected_hash):
            logger.error(f"Hash mismatch for {path}")
            raise ValueError("Archived document integrity check failed")
        return content

    async def exists(self, path: str) -> bool:
        return self._resolve(path).exists()
