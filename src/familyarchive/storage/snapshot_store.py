"""
File-based rollback snapshot store.

Snapshots are written as {id}.zip (or {id}.zip.enc when encrypted) next to
a {id}.json metadata file. Encryption uses AES-256-GCM with a random
12-byte nonce prefixed to the ciphertext.
"""

import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from ..core.models import parse_datetime
from ..core.snapshot_store import SnapshotInfo, SnapshotStore

logger = logging.getLogger(__name__)

NONCE_SIZE = 12


def get_encryption_key(
    key_source: str = "env",
    key_env_var: str = "FAMILYARCHIVE_SNAPSHOT_KEY",
    key_file_path: Optional[str] = None,
) -> Optional[bytes]:
    """
    Get encryption key from configured source.

    Args:
        key_source: Source type ('env' or 'file')
        key_env_var: Environment variable name
        key_file_path: Path to key file

    Returns:
        Encryption key as bytes, or None if not available
    """
    if key_source == "env":
        key_str = os.environ.get(key_env_var)
        if key_str:
            return key_str.encode("utf-8")

    elif key_source == "file" and key_file_path:
        key_path = Path(key_file_path)
        if key_path.exists():
            return key_path.read_bytes().strip()

    return None


def _aesgcm(key: bytes):
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
    except ImportError:
        raise ImportError(
            "cryptography library is required for encryption. "
            "Install with: pip install cryptography"
        )
    # AES-256 needs exactly 32 bytes
    if len(key) != 32:
        key = hashlib.sha256(key).digest()
    return AESGCM(key)


class FileSnapshotStore(SnapshotStore):
    """
    Persists rollback snapshots in a directory.

    Example:
        >>> store = FileSnapshotStore("local/snapshots", encryption_key=b"secret")
        >>> info = store.save(export_stream, reason="before merge import")
        >>> data = b"".join(store.open(info.snapshot_id))
    """

    def __init__(
        self,
        base_dir: Path,
        encryption_key: Optional[bytes] = None,
        create_dirs: bool = True,
    ):
        """
        Initialize the snapshot store.

        Args:
            base_dir: Directory holding snapshots
            encryption_key: Encrypt snapshots at rest with this key when set
            create_dirs: Whether to create the directory automatically
        """
        self.base_dir = Path(base_dir)
        self.encryption_key = encryption_key

        if create_dirs:
            self.base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def encrypt(self) -> bool:
        return bool(self.encryption_key)

    def _new_id(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return f"{stamp}-{uuid.uuid4().hex[:8]}"

    def _meta_path(self, snapshot_id: str) -> Path:
        return self.base_dir / f"{snapshot_id}.json"

    def save(self, chunks: Iterable[bytes], reason: Optional[str] = None) -> SnapshotInfo:
        snapshot_id = self._new_id()
        partial = self.base_dir / f".{snapshot_id}.partial"
        suffix = ".zip.enc" if self.encrypt else ".zip"
        final = self.base_dir / f"{snapshot_id}{suffix}"

        try:
            with open(partial, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)

            if self.encrypt:
                data = partial.read_bytes()
                nonce = os.urandom(NONCE_SIZE)
                partial.write_bytes(nonce + _aesgcm(self.encryption_key).encrypt(nonce, data, None))

            os.replace(partial, final)
        except BaseException:
            if partial.exists():
                partial.unlink()
            raise

        info = SnapshotInfo(
            snapshot_id=snapshot_id,
            created_at=datetime.now(timezone.utc),
            size_bytes=final.stat().st_size,
            encrypted=self.encrypt,
            reason=reason,
        )
        with open(self._meta_path(snapshot_id), "w", encoding="utf-8") as f:
            json.dump(info.to_dict(), f, indent=2)

        logger.info(f"Saved rollback snapshot {snapshot_id} ({info.size_bytes} bytes)")
        return info

    def open(self, snapshot_id: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        info = self._load_info(snapshot_id)
        if info is None:
            raise KeyError(snapshot_id)

        if info.encrypted:
            if not self.encryption_key:
                raise ValueError(f"Snapshot {snapshot_id} is encrypted; a key is required")
            blob = (self.base_dir / f"{snapshot_id}.zip.enc").read_bytes()
            data = _aesgcm(self.encryption_key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
            return iter([data[i:i + chunk_size] for i in range(0, len(data), chunk_size)])

        return self._read_chunks(self.base_dir / f"{snapshot_id}.zip", chunk_size)

    def _read_chunks(self, path: Path, chunk_size: int) -> Iterator[bytes]:
        with open(path, "rb") as f:
            yield from iter(lambda: f.read(chunk_size), b"")

    def list(self) -> List[SnapshotInfo]:
        infos = []
        for meta_path in self.base_dir.glob("*.json"):
            info = self._load_info(meta_path.stem)
            if info is not None:
                infos.append(info)
        infos.sort(key=lambda i: (i.created_at, i.snapshot_id), reverse=True)
        return infos

    def _load_info(self, snapshot_id: str) -> Optional[SnapshotInfo]:
        if "/" in snapshot_id or "\\" in snapshot_id or snapshot_id.startswith("."):
            return None
        meta_path = self._meta_path(snapshot_id)
        if not meta_path.exists():
            return None
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable snapshot metadata {meta_path}: {e}")
            return None
        return SnapshotInfo(
            snapshot_id=data["snapshot_id"],
            created_at=parse_datetime(data["created_at"]),
            size_bytes=int(data["size_bytes"]),
            encrypted=bool(data.get("encrypted")),
            reason=data.get("reason"),
        )
