"""Core storage - backing store access and artifact storage."""

from core.storage.artifacts import (
    put_json,
    get_json,
    put_binary,
    get_binary,
    ArtifactStore,
)
from core.storage.database import (
    get_connection,
    iter_rows,
    chunked,
)

__all__ = [
    "put_json",
    "get_json",
    "put_binary",
    "get_binary",
    "ArtifactStore",
    "get_connection",
    "iter_rows",
    "chunked",
]
