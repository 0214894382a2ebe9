"""
Session storage abstraction.

Separates persistence from simulation logic for testability.
The whole GameState is one blob; there is exactly one session per server.
"""

import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from .schema import GameState

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """
    Abstract storage interface for the session blob.

    Implementations:
    - JsonStateStore: File-based persistence (production)
    - MemoryStateStore: In-memory storage (testing)
    """

    def save(self, state: GameState) -> None:
        """Persist the state."""
        ...

    def load(self) -> GameState | None:
        """Load the state. Returns None if absent or unreadable."""
        ...


class JsonStateStore:
    """
    File-based state storage using JSON.

    Features:
    - Automatic backup on save
    - Corrupt or schema-incompatible files load as None
    """

    def __init__(self, data_dir: Path | str = "data", filename: str = "state.json"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.data_dir / filename

    def save(self, state: GameState) -> None:
        """Save state to JSON file with backup."""
        # Backup previous save
        if self.path.exists():
            backup = self.path.with_suffix(".json.bak")
            backup.write_text(self.path.read_text(encoding="utf-8"), encoding="utf-8")

        self.path.write_text(state.model_dump_json(indent=2), encoding="utf-8")

    def load(self) -> GameState | None:
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return GameState.model_validate(data)
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            logger.warning("Could not load saved state from %s: %s", self.path, e)
            return None

    def exists(self) -> bool:
        return self.path.exists()


class MemoryStateStore:
    """
    In-memory state storage for testing.

    Stores a JSON copy so later mutation of the live state does not leak
    into what was "persisted".
    """

    def __init__(self):
        self.blob: str | None = None
        self.save_count = 0

    def save(self, state: GameState) -> None:
        self.blob = state.model_dump_json()
        self.save_count += 1

    def load(self) -> GameState | None:
        if self.blob is None:
            return None
        try:
            return GameState.model_validate_json(self.blob)
        except ValidationError as e:
            logger.warning("Discarding unreadable in-memory state: %s", e)
            return None

    def clear(self) -> None:
        """Clear stored state."""
        self.blob = None
