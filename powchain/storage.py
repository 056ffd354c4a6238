from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol

from .models import Block, blocks_from_dicts, blocks_to_dicts


logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    pass


class ChainStore(Protocol):
    def exists(self) -> bool:
        ...

    def load(self) -> list[Block]:
        ...

    def save(self, blocks: list[Block]) -> None:
        ...

    def quarantine(self) -> None:
        ...


class JsonChainStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[Block]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            return blocks_from_dicts(data)
        except (OSError, ValueError, TypeError, KeyError) as exc:
            logger.warning("Failed to load chain from %s, starting fresh: %s", self.path, exc)
            return []

    def save(self, blocks: list[Block]) -> None:
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(blocks_to_dicts(blocks), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to save chain to {self.path}: {exc}") from exc

    def quarantine(self) -> None:
        """Move an unusable chain file aside so a fresh chain does not overwrite it."""
        backup = self.path.with_suffix(self.path.suffix + ".invalid")
        try:
            os.replace(self.path, backup)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceError(f"Failed to move invalid chain {self.path} aside: {exc}") from exc
        logger.warning("Moved invalid chain file %s to %s", self.path, backup)


class MemoryChainStore:
    def __init__(self, blocks: list[Block] | None = None):
        self.blocks: list[Block] = list(blocks or [])
        self.quarantined: list[Block] = []
        self.save_count = 0

    def exists(self) -> bool:
        return bool(self.blocks)

    def load(self) -> list[Block]:
        return list(self.blocks)

    def save(self, blocks: list[Block]) -> None:
        self.blocks = list(blocks)
        self.save_count += 1

    def quarantine(self) -> None:
        self.quarantined = list(self.blocks)
        self.blocks = []
