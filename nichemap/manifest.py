"""
Artifact manifest: logical artifact names -> files under the working directory.
"""

import logging
from pathlib import Path
from typing import Optional

from .errors import StageInputError
from .storage import read_json, write_json

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class Manifest:
    """
    Registry of the artifacts produced by each stage.

    Paths are stored relative to the working directory so a workdir can be
    moved as a whole. Every registration is persisted immediately.
    """

    def __init__(self, workdir: str | Path, entries: Optional[dict[str, str]] = None):
        self.workdir = Path(workdir)
        self.entries: dict[str, str] = dict(entries or {})

    @property
    def path(self) -> Path:
        return self.workdir / MANIFEST_NAME

    @classmethod
    def load(cls, workdir: str | Path) -> "Manifest":
        """Load the manifest of `workdir`, or start an empty one."""
        workdir = Path(workdir)
        path = workdir / MANIFEST_NAME
        if not path.exists():
            return cls(workdir)
        data = read_json(path)
        return cls(workdir, data.get("artifacts", {}))

    def save(self) -> Path:
        return write_json({"artifacts": self.entries}, self.path)

    def _relative(self, path: Path) -> str:
        path = Path(path)
        try:
            return path.resolve().relative_to(self.workdir.resolve()).as_posix()
        except ValueError:
            return str(path.resolve())

    def register(self, name: str, path: str | Path, overwrite: bool = False) -> Path:
        """
        Record that artifact `name` lives at `path`.

        Raises:
            ValueError: if `name` is already registered with another path
                and `overwrite` is False
        """
        rel = self._relative(Path(path))
        current = self.entries.get(name)
        if current is not None and current != rel and not overwrite:
            raise ValueError(f"Artifact '{name}' already registered at {current}; refusing to point it at {rel}")
        self.entries[name] = rel
        self.save()
        logger.debug(f"Registered {name} -> {rel}")
        return self.resolve(name)

    def resolve(self, name: str) -> Path:
        rel = Path(self.entries[name])
        return rel if rel.is_absolute() else self.workdir / rel

    def __contains__(self, name: str) -> bool:
        return name in self.entries

    def names(self, prefix: str = "") -> list[str]:
        return sorted(n for n in self.entries if n.startswith(prefix))

    def require(self, name: str) -> Path:
        """
        Path of a registered artifact that must exist on disk.

        Raises:
            StageInputError: if the entry or the file is missing
        """
        if name not in self.entries:
            raise StageInputError("Required artifact is not registered; run the producing stage first", item=name)
        path = self.resolve(name)
        if not path.exists():
            raise StageInputError(f"Registered artifact file is missing: {path}", item=name)
        return path
