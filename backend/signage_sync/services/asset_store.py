"""
Source bytes for uploads.

Assets are assumed validated (container, codec, duration) before they reach
this module; the store only resolves a reference to bytes.
"""
from __future__ import annotations

import abc
import logging
from pathlib import Path

from signage_sync.settings import get_settings

logger = logging.getLogger(__name__)


class AssetReadError(Exception):
    """Asset reference could not be resolved to bytes."""


class AssetStore(abc.ABC):
    @abc.abstractmethod
    async def read(self, source_ref: str) -> bytes:
        ...


class LocalAssetStore(AssetStore):
    """Reads assets from `DATA_DIR`; absolute paths are read as-is."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or get_settings().data_dir)

    def resolve(self, source_ref: str) -> Path:
        path = Path(source_ref)
        if not path.is_absolute():
            path = self.root / source_ref.lstrip("/")
        return path

    async def read(self, source_ref: str) -> bytes:
        path = self.resolve(source_ref)
        if not path.exists():
            raise AssetReadError(f"asset not found: {path}")
        logger.info(f"[assets] reading {path.name} ({path.stat().st_size} bytes)")
        with open(path, "rb") as f:
            return f.read()


class MemoryAssetStore(AssetStore):
    """In-memory store keyed by reference; used by scripts and tests."""

    def __init__(self, blobs: dict[str, bytes] | None = None):
        self.blobs = dict(blobs or {})

    async def read(self, source_ref: str) -> bytes:
        try:
            return self.blobs[source_ref]
        except KeyError:
            raise AssetReadError(f"asset not found: {source_ref}") from None
