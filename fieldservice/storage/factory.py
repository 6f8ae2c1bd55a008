import structlog

from ..config import settings
from ..errors import UpstreamError
from .provider import StorageProvider
from .local_provider import LocalStorageProvider
from .blob_provider import BlobStorageProvider


logger = structlog.get_logger(__name__)


def get_storage() -> StorageProvider:
    """Get storage provider based on configuration"""
    if settings.storage_provider == "blob":
        try:
            return BlobStorageProvider()
        except RuntimeError as e:
            logger.error("storage_misconfigured", provider="blob", error=str(e))
            raise UpstreamError("Storage is not configured")
    return LocalStorageProvider()
