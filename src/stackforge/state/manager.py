"""State manager for loading, saving, and locking provisioning state."""

import fcntl
import json
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from stackforge.state.models import STATE_VERSION, RemoteState, ResourceState, _utcnow
from stackforge.utils.errors import (
    StateConflictError,
    StateError,
    StateLockError,
    StateVersionError,
)
from stackforge.utils.logging import get_logger

logger = get_logger(__name__)


class StateManager:
    """Owns the persisted state document.

    Every mutation is flushed to disk (temp file, fsync, atomic rename) before
    the call returns, so a write for a resource is durable before anything
    that depends on it runs. Callers hold ``resource_lock(address)`` while an
    action for that address is in flight.
    """

    def __init__(self, state_path: str, lock_timeout: int = 30):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
            lock_timeout: Seconds to wait for the inter-process file lock
        """
        self.state_path = Path(state_path)
        self.lock_timeout = lock_timeout
        self._lock_file: Optional[int] = None
        self._current_state: Optional[RemoteState] = None
        self._mutex = threading.RLock()
        self._resource_locks: Dict[str, threading.Lock] = {}
        self._resource_locks_guard = threading.Lock()

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def load(self) -> RemoteState:
        """
        Load state from file, or start from an empty state if there is none.

        Raises:
            StateVersionError: If the file was written with another schema version
            StateError: If state file is corrupted or invalid
        """
        with self._mutex:
            if not self.state_path.exists():
                self._current_state = RemoteState()
                return self._current_state

            data = self._read_document()
            version = data.get("version")
            if version != STATE_VERSION:
                raise StateVersionError(
                    f"State file {self.state_path} has schema version {version!r}, "
                    f"expected {STATE_VERSION}"
                )

            try:
                self._current_state = RemoteState.from_dict(data)
            except Exception as e:
                raise StateError(f"Failed to load state file: {e}", cause=e)
            return self._current_state

    def _read_document(self) -> Dict[str, Any]:
        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file: {e}", cause=e)
        if not isinstance(data, dict):
            raise StateError(f"State file {self.state_path} is not a JSON object")
        return data

    def read(self) -> RemoteState:
        """Return a snapshot of the current state, loading it if needed."""
        with self._mutex:
            if self._current_state is None:
                self.load()
            return self._current_state.copy_deep()

    def get_resource(self, address: str) -> Optional[ResourceState]:
        """Return a copy of one record, or None if it is not recorded."""
        with self._mutex:
            record = self._require_state().get_resource(address)
            return record.model_copy(deep=True) if record else None

    def write(self, address: str, record: ResourceState) -> None:
        """
        Record a resource and flush the state to disk.

        Args:
            address: Resource identity
            record: Last-known attributes for the resource
        """
        if record.address != address:
            raise StateError(
                f"Record address {record.address!r} does not match {address!r}",
                resource_id=address
            )
        with self._mutex:
            state = self._require_state().copy_deep()
            state.resources[address] = record.model_copy(deep=True)
            self._flush(state)
        logger.debug(f"Recorded state for {address}")

    def remove(self, address: str) -> Optional[ResourceState]:
        """Drop a resource record and flush the state to disk."""
        with self._mutex:
            state = self._require_state().copy_deep()
            record = state.resources.pop(address, None)
            if record is not None:
                self._flush(state)
                logger.debug(f"Removed {address} from state")
            return record

    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        """Replace the stored outputs and flush the state to disk."""
        with self._mutex:
            state = self._require_state().copy_deep()
            state.outputs = dict(outputs)
            self._flush(state)

    def initialize(self) -> RemoteState:
        """
        Create an empty state file if none exists.

        Returns:
            The existing or newly created state
        """
        with self._mutex:
            if self.exists():
                return self.load()
            state = RemoteState()
            self._save(state)
            self._current_state = state
            logger.info(f"Initialized state file {self.state_path}")
            return state

    def current_serial(self) -> int:
        """Serial of the document currently on disk (0 when absent)."""
        if not self.state_path.exists():
            return 0
        return int(self._read_document().get("serial", 0))

    def check_serial(self, expected: int) -> None:
        """
        Ensure nobody changed the state since it was read at ``expected``.

        Raises:
            StateConflictError: If the persisted serial moved
        """
        actual = self.current_serial()
        if actual != expected:
            raise StateConflictError(
                f"State changed out-of-band (serial {expected} -> {actual}); "
                f"run plan again and review the differences",
                suggestions=["Re-run 'stackforge plan' against the current state"]
            )

    def _require_state(self) -> RemoteState:
        if self._current_state is None:
            self.load()
        return self._current_state

    def _flush(self, state: RemoteState) -> None:
        """Persist a modified copy; it becomes current only once it is on disk."""
        state.serial += 1
        state.timestamp = _utcnow()
        self._save(state)
        self._current_state = state

    def _save(self, state: RemoteState) -> None:
        """Write the document atomically and durably."""
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.state_path.with_name(self.state_path.name + ".tmp")

        try:
            with open(temp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.state_path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StateError(f"Failed to save state file: {e}", cause=e)

    @contextmanager
    def resource_lock(self, address: str) -> Iterator[None]:
        """Hold the per-resource lock for ``address``."""
        with self._resource_locks_guard:
            lock = self._resource_locks.setdefault(address, threading.Lock())
        with lock:
            yield

    def lock(self, timeout: Optional[int] = None) -> None:
        """
        Acquire exclusive lock on state file.

        Raises:
            StateLockError: If lock cannot be acquired
        """
        timeout = self.lock_timeout if timeout is None else timeout
        lock_path = self.state_path.with_name(self.state_path.name + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start_time >= timeout:
                    os.close(fd)
                    raise StateLockError(
                        f"Failed to acquire lock on {self.state_path} after {timeout}s",
                        suggestions=["Check whether another stackforge run is in progress"]
                    )
                time.sleep(0.1)
        self._lock_file = fd

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None

    def __enter__(self):
        """Acquire lock and load state."""
        self.lock()
        try:
            self.load()
        except Exception:
            self.unlock()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Release lock."""
        self.unlock()
