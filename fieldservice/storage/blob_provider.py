from typing import Optional

from azure.storage.blob import BlobServiceClient, ContentSettings

from ..config import settings
from .provider import StorageProvider


class BlobStorageProvider(StorageProvider):
    def __init__(self) -> None:
        if not settings.azure_blob_connection or not settings.azure_blob_container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(settings.azure_blob_connection)
        self._container = settings.azure_blob_container

    def _client(self, key: str):
        return self._service.get_blob_client(self._container, key.lstrip("/"))

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        content_settings = ContentSettings(content_type=content_type) if content_type else None
        self._client(key).upload_blob(data, overwrite=True, content_settings=content_settings)
        return key

    def get_public_url(self, key: str) -> str:
        return self._client(key).url

    def exists(self, key: str) -> bool:
        return self._client(key).exists()

