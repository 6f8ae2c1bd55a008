from typing import Optional


class StorageProvider:
    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def get_public_url(self, key: str) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError
