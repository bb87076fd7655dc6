"""
Asset store interface for binary person photos.
"""

from abc import ABC, abstractmethod
from typing import List, Tuple


class AssetStore(ABC):
    """
    Abstract base class for binary asset storage.

    Assets are addressed by the owning person's id and the asset's original
    filename.
    """

    @abstractmethod
    def read(self, person_id: str, filename: str) -> bytes:
        """
        Read an asset's bytes.

        Raises:
            AssetIOError: If the asset is missing or unreadable
        """
        pass

    @abstractmethod
    def write(self, person_id: str, filename: str, data: bytes) -> None:
        """
        Create or overwrite an asset.

        Raises:
            AssetIOError: If the asset cannot be written
        """
        pass

    @abstractmethod
    def exists(self, person_id: str, filename: str) -> bool:
        """Check whether an asset exists."""
        pass

    @abstractmethod
    def list_assets(self) -> List[Tuple[str, str]]:
        """List (person_id, filename) pairs of every stored asset."""
        pass

    def get_name(self) -> str:
        """Return the asset store name/identifier."""
        return self.__class__.__name__
