"""
Local filesystem storage provider for development.
Saves files to a local directory instead of Azure Blob Storage.
"""
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from ..config import settings
from .provider import StorageProvider


PUBLIC_PREFIX = "/storage"


class LocalStorageProvider(StorageProvider):
    """Local filesystem storage provider for development."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.local_storage_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get the local filesystem path for a given key."""
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / clean_key

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return key

    def get_public_url(self, key: str) -> str:
        return f"{PUBLIC_PREFIX}/{quote(key.lstrip('/'))}"

    def exists(self, key: str) -> bool:
        """Check if a file exists locally."""
        return self._get_path(key).exists()

