"""
Staging area transports.

A transport stores staged files under generated object names. ``put`` must
replace an existing object of the same name so that a retried upload never
leaves two copies behind.
"""

import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Protocol, Union, runtime_checkable


@runtime_checkable
class StageTransport(Protocol):
    """PUT-like storage addressed by object name."""

    def put(self, name: str, payload: bytes) -> None: ...

    def get(self, name: str) -> bytes: ...

    def remove(self, name: str) -> None: ...

    def exists(self, name: str) -> bool: ...


class LocalDirectoryStage:
    """Stage backed by a local (or mounted) directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        path = (self.root / name).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Object name escapes the stage directory: {name}")
        return path

    def put(self, name: str, payload: bytes) -> None:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".put-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def remove(self, name: str) -> None:
        path = self._path(name)
        path.unlink(missing_ok=True)
        # Drop the run directory once it is empty
        if path.parent != self.root.resolve():
            try:
                path.parent.rmdir()
            except OSError:
                pass

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def list(self, prefix: str = "") -> List[str]:
        return sorted(
            str(p.relative_to(self.root))
            for p in self.root.rglob("*")
            if p.is_file() and not p.name.startswith(".put-")
            and str(p.relative_to(self.root)).startswith(prefix)
        )


class MemoryStage:
    """In-process stage, mainly for diagnostics and tests."""

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, name: str, payload: bytes) -> None:
        with self._lock:
            self._objects[name] = bytes(payload)

    def get(self, name: str) -> bytes:
        with self._lock:
            try:
                return self._objects[name]
            except KeyError:
                raise FileNotFoundError(name) from None

    def remove(self, name: str) -> None:
        with self._lock:
            self._objects.pop(name, None)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._objects

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(n for n in self._objects if n.startswith(prefix))
