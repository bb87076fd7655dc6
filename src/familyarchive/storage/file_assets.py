"""
File-based asset store for person photos.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Tuple

from ..archive.codec import resolve_under
from ..core.asset_store import AssetStore
from ..core.exceptions import AssetIOError, FormatError


logger = logging.getLogger(__name__)


class LocalAssetStore(AssetStore):
    """
    Stores photos as files on the local filesystem.

    Files are organized by: {base_dir}/{person_id}/{filename}
    """

    def __init__(self, base_dir: Path, create_dirs: bool = True):
        """
        Initialize the asset store.

        Args:
            base_dir: Base directory for photos
            create_dirs: Whether to create directories automatically
        """
        self.base_dir = Path(base_dir)
        self.create_dirs = create_dirs

        if create_dirs:
            self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, person_id: str, filename: str) -> Path:
        # Each part is a single path component
        for part in (person_id, filename):
            if not part or part in (".", "..") or "/" in part or "\\" in part:
                raise AssetIOError(f"Invalid photo path: {person_id}/{filename}", person_id, filename)
        try:
            return resolve_under(self.base_dir, person_id, filename)
        except FormatError as e:
            raise AssetIOError(str(e), person_id, filename) from e

    def read(self, person_id: str, filename: str) -> bytes:
        path = self._path(person_id, filename)
        try:
            return path.read_bytes()
        except OSError as e:
            raise AssetIOError(f"Failed to read photo {person_id}/{filename}: {e}", person_id, filename) from e

    def write(self, person_id: str, filename: str, data: bytes) -> None:
        """Write atomically: a temp file in the target directory, then rename."""
        path = self._path(person_id, filename)
        try:
            if self.create_dirs:
                path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise AssetIOError(f"Failed to write photo {person_id}/{filename}: {e}", person_id, filename) from e
        logger.debug(f"Wrote photo: {path}")

    def exists(self, person_id: str, filename: str) -> bool:
        try:
            return self._path(person_id, filename).is_file()
        except AssetIOError:
            return False

    def list_assets(self) -> List[Tuple[str, str]]:
        if not self.base_dir.exists():
            return []
        assets = []
        for person_dir in sorted(self.base_dir.iterdir()):
            if not person_dir.is_dir():
                continue
            for file_path in sorted(person_dir.iterdir()):
                if file_path.is_file() and not file_path.name.startswith(".upload-"):
                    assets.append((person_dir.name, file_path.name))
        return assets

    def get_name(self) -> str:
        """Return the asset store name."""
        return "local_assets"
