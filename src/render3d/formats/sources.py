"""Byte access for decoders: file reads and in-package blob lookup."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol

from render3d.errors import MissingBlobError

logger = logging.getLogger("render3d.formats.sources")

BLOB_SCHEME = "blob:"


class ByteSource(Protocol):
    """The one capability decoders get for reaching outside the model bytes."""

    def read_bytes(self, path: str) -> bytes:
        ...


class LocalByteSource:
    """Reads from the local filesystem."""

    def read_bytes(self, path: str) -> bytes:
        data = Path(path).read_bytes()
        logger.debug("Read %d bytes from '%s'", len(data), path)
        return data


class MemoryByteSource:
    """Serves bytes from a dict keyed by path. Handy for tests and embedding."""

    def __init__(self, files: Optional[Mapping[str, bytes]] = None) -> None:
        self._files: Dict[str, bytes] = {str(Path(k)): v for k, v in (files or {}).items()}

    def read_bytes(self, path: str) -> bytes:
        key = str(Path(path))
        if key not in self._files:
            raise FileNotFoundError(path)
        return self._files[key]


def is_blob_uri(uri: Optional[str]) -> bool:
    return bool(uri) and uri.startswith(BLOB_SCHEME)


def blob_id(uri: str) -> str:
    """Extract the id from an internal reference.

    ``blob:nodedata:1234`` -> ``1234``; ``blob:1234`` -> ``1234``.
    """
    rest = uri[len(BLOB_SCHEME):]
    return re.split(r"[:/]", rest)[-1]


class BlobTable:
    """Per-decode mapping of internal blob ids to their bytes.

    Built once from the package document and handed explicitly to the
    geometry and texture resolvers of the same decode.
    """

    def __init__(self, blobs: Optional[Mapping[str, bytes]] = None) -> None:
        self._blobs: Dict[str, bytes] = dict(blobs or {})

    @classmethod
    def from_buffers(cls, buffers: Iterable[Mapping], payload: bytes) -> "BlobTable":
        """Slice every ``blob:`` buffer out of the package payload.

        Each blob buffer names its range with ``byteOffset`` (default 0)
        and ``byteLength``. Ranges that fall outside the payload are left
        out of the table so lookups report them as missing.
        """
        blobs: Dict[str, bytes] = {}
        for buffer in buffers:
            uri = buffer.get("uri")
            if not is_blob_uri(uri):
                continue
            offset = int(buffer.get("byteOffset", 0) or 0)
            length = int(buffer.get("byteLength", 0) or 0)
            if offset < 0 or length < 0 or offset + length > len(payload):
                logger.warning(
                    "Blob %s range [%d, %d) exceeds %d payload bytes",
                    uri, offset, offset + length, len(payload),
                )
                continue
            blobs[blob_id(uri)] = payload[offset:offset + length]
        logger.debug("Blob table holds %d entr(ies)", len(blobs))
        return cls(blobs)

    def resolve(self, uri: str) -> bytes:
        """Return the bytes for a ``blob:`` URI or raise MissingBlobError."""
        key = blob_id(uri)
        data = self._blobs.get(key)
        if data is None:
            raise MissingBlobError(key)
        return data

    def __contains__(self, key: str) -> bool:
        return key in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)
