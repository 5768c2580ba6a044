from .base import Backend, BackendKind
from .blob_client import BlobClient
from .container import ArchiveContainer, SparseImageContainer, StagingContainer, container_capacity
from .local import LocalBackend
from .remote import RemoteBackend

__all__ = [
    "Backend",
    "BackendKind",
    "BlobClient",
    "StagingContainer",
    "ArchiveContainer",
    "SparseImageContainer",
    "container_capacity",
    "LocalBackend",
    "RemoteBackend",
]
