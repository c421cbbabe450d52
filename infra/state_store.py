"""
PegSentinel Infrastructure: State Store

Persistent keeper/vault state with atomic writes and pluggable backends.
"""

import json
import os
import sqlite3
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "vault": None,  # PegDefenseVault.to_state()
    "last_poll_at": None,
    "last_rebalance_at": None,
    "rebalances": 0,
    "consecutive_failures": 0,
    "events": [],  # Recent keeper events
}

MAX_EVENTS = 100


class StateBackend(Protocol):
    def read(self) -> Optional[Dict[str, Any]]: ...

    def write(self, state: Dict[str, Any]) -> None: ...

    def describe(self) -> str: ...


class JsonFileBackend:
    """Single JSON document, replaced atomically (temp file + rename)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def write(self, state: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".state_",
            suffix=".json.tmp"
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def describe(self) -> str:
        return f"json:{self.path}"


class SQLiteStateBackend:
    """Key/value table holding the state document; each write is one transaction."""

    def __init__(self, path: Path, key: str = "keeper"):
        self.path = Path(path)
        self.key = key
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS state (key TEXT PRIMARY KEY, payload TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path))

    def read(self) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT payload FROM state WHERE key = ?", (self.key,)).fetchone()
        finally:
            conn.close()
        return json.loads(row[0]) if row else None

    def write(self, state: Dict[str, Any]) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO state (key, payload, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at",
                    (self.key, json.dumps(state), datetime.now(timezone.utc).isoformat()),
                )
        finally:
            conn.close()

    def describe(self) -> str:
        return f"sqlite:{self.path}#{self.key}"


class StateStore:
    """
    Persistent state storage.

    Features:
    - Atomic writes (temp file + rename, or one SQLite transaction)
    - Defaults merged on load, so older files keep working
    - Bounded keeper event history
    - Vault snapshot save/restore
    """

    def __init__(self, state_file: Optional[str] = None, backend: Optional[StateBackend] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/vault_state.json)
            backend: Explicit backend (overrides state_file)
        """
        if backend is None:
            path = state_file or os.getenv("STATE_FILE", "data/vault_state.json")
            backend = JsonFileBackend(Path(path))
        self._backend = backend
        self._state: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized StateStore at {backend.describe()}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from the backend.

        Returns:
            State dict with defaults merged
        """
        try:
            data = self._backend.read()
        except Exception as e:
            logger.error(f"Failed to load state from {self._backend.describe()}: {e}")
            return json.loads(json.dumps(DEFAULT_STATE))

        if data is None:
            logger.debug("No state found, using defaults")
            return json.loads(json.dumps(DEFAULT_STATE))
        if not isinstance(data, dict):
            logger.warning("Invalid state format, using defaults")
            return json.loads(json.dumps(DEFAULT_STATE))

        state = {**json.loads(json.dumps(DEFAULT_STATE)), **data}
        self._state = state
        logger.debug("Loaded state")
        return state

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state atomically.

        Args:
            state: State dict to save
        """
        try:
            self._backend.write(state)
            self._state = state
            logger.debug("Saved state")
        except Exception as e:
            logger.error(f"Failed to save state to {self._backend.describe()}: {e}")

    def update(self, event: str, **kwargs) -> Dict[str, Any]:
        """
        Record a keeper event and bump the matching counters.

        Args:
            event: Event type ("poll", "rebalance", "failure", ...)
            **kwargs: Event-specific data

        Returns:
            Updated state
        """
        state = self.load()
        now = datetime.now(timezone.utc).isoformat()

        state.setdefault("events", []).append({"at": now, "event": event, **kwargs})
        if len(state["events"]) > MAX_EVENTS:
            state["events"] = state["events"][-MAX_EVENTS:]

        if event == "poll":
            state["last_poll_at"] = now
            state["consecutive_failures"] = 0
        elif event == "rebalance":
            state["rebalances"] = state.get("rebalances", 0) + 1
            state["last_rebalance_at"] = now
            state["consecutive_failures"] = 0
        elif event == "failure":
            state["consecutive_failures"] = state.get("consecutive_failures", 0) + 1

        self.save(state)
        return state

    def save_vault(self, vault_state: Dict[str, Any]) -> None:
        state = self.load()
        state["vault"] = vault_state
        self.save(state)

    def load_vault(self) -> Optional[Dict[str, Any]]:
        return self.load().get("vault")

    def get(self, key: str, default: Any = None) -> Any:
        state = self._state if self._state is not None else self.load()
        return state.get(key, default)

    def reset(self) -> Dict[str, Any]:
        """Drop everything, including the vault snapshot."""
        state = json.loads(json.dumps(DEFAULT_STATE))
        self.save(state)
        logger.warning("State store reset to defaults")
        return state


def create_state_store_from_config(cfg: Optional[Dict[str, Any]] = None) -> StateStore:
    """
    Build a StateStore from the `state` section of app.yaml.

    STATE_FILE in the environment overrides the configured path.
    """
    cfg = cfg or {}
    backend_name = str(cfg.get("backend") or cfg.get("store") or "json").lower()
    path = Path(os.getenv("STATE_FILE") or cfg.get("path") or "data/vault_state.json")
    if backend_name == "sqlite":
        backend: StateBackend = SQLiteStateBackend(path)
    elif backend_name == "json":
        backend = JsonFileBackend(path)
    else:
        raise ValueError(f"Unknown state backend: {backend_name}")
    return StateStore(backend=backend)
