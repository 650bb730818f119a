"""File store abstraction and local filesystem implementation."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Protocol

from slugify import slugify

if TYPE_CHECKING:
    from pathlib import Path
    from uuid import UUID


class FileStore(Protocol):
    """Protocol for claim artifact storage backends."""

    def save(self, claim_id: UUID, kind: str, label: str, data: bytes, ext: str) -> str: ...

    def get_path(self, relative_path: str) -> Path: ...

    def exists(self, relative_path: str) -> bool: ...

    def read(self, relative_path: str) -> bytes: ...


class LocalFileStore:
    """Local filesystem implementation of FileStore.

    Directory layout: {root}/claims/{claim_id}/{kind}__{label}__{token}.{ext}

    Every save gets a fresh token, so regenerating an artifact on retry
    never replaces one an earlier submission already referenced.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def save(self, claim_id: UUID, kind: str, label: str, data: bytes, ext: str) -> str:
        """Save an artifact and return the relative path from store root."""
        dir_path = self.root / "claims" / str(claim_id)
        dir_path.mkdir(parents=True, exist_ok=True)

        stem = f"{kind}__{self._slugify_label(label)}__{self._token()}"
        counter = 1
        while True:
            suffix = f"_{counter}" if counter > 1 else ""
            file_path = dir_path / f"{stem}{suffix}.{ext}"
            try:
                # Exclusive create: a name already on disk is never reopened.
                with file_path.open("xb") as fh:
                    fh.write(data)
            except FileExistsError:
                counter += 1
                continue
            return str(file_path.relative_to(self.root))

    def get_path(self, relative_path: str) -> Path:
        """Return the absolute path for a relative store path."""
        return self.root / relative_path

    def exists(self, relative_path: str) -> bool:
        """Check whether a file exists in the store."""
        return (self.root / relative_path).exists()

    def read(self, relative_path: str) -> bytes:
        return (self.root / relative_path).read_bytes()

    @staticmethod
    def _token() -> str:
        return secrets.token_hex(4)

    @staticmethod
    def _slugify_label(label: str) -> str:
        """Convert a label to a filesystem-safe slug, max 50 chars."""
        return str(slugify(label, max_length=50)) or "artifact"
