from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from esign.core.config import settings


class StorageBackend(Protocol):
    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:  # returns storage key
        ...

    def load_bytes(self, path: str) -> bytes:
        ...


@dataclass
class LocalStorage:
    base_dir: Path

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:
        target_dir = self.base_dir / root
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / name
        target.write_bytes(data)
        return str(target.relative_to(self.base_dir).as_posix())

    def load_bytes(self, path: str) -> bytes:
        target = (self.base_dir / path).resolve()
        if self.base_dir.resolve() not in target.parents:
            raise FileNotFoundError(path)
        return target.read_bytes()


def get_storage() -> StorageBackend:
    return LocalStorage(Path(settings.storage_path).expanduser())
