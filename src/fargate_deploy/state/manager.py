"""State manager for loading, saving, and updating deployment state."""

import fcntl
import json
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from fargate_deploy.state.models import (
    DeploymentAttempt,
    ResourceRecord,
    State,
    utcnow,
)
from fargate_deploy.utils.errors import ErrorContext, ReleaseInProgressError, StateError
from fargate_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class StateLockError(StateError):
    """Exception raised when state file cannot be locked."""


class StateManager:
    """Manages deployment state with file locking.

    Every mutation runs inside ``transaction()``: an in-process re-entrant
    lock serializes threads, an exclusive ``flock`` on a sidecar lock file
    serializes processes, and the state is re-read from disk, changed and
    written back atomically before either lock is released.
    """

    def __init__(
        self,
        state_path: str,
        environment: str,
        region: str,
        app_name: str,
        lock_timeout: float = 30.0
    ):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
            environment: Environment the state belongs to
            region: AWS region
            app_name: Application name
            lock_timeout: Seconds to wait for the file lock
        """
        self.state_path = Path(state_path)
        self.environment = environment
        self.region = region
        self.app_name = app_name
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.RLock()
        self._lock_fd: Optional[int] = None
        self._depth = 0
        self._current: Optional[State] = None
        self._release_locks: Dict[str, threading.Lock] = {}

    def release_lock(self, service: str) -> threading.Lock:
        """In-process lock serializing releases and rollbacks of ``service``.

        Callers sharing this manager share the lock; other processes are
        kept out by the active attempt recorded in the state file.
        """
        with self._thread_lock:
            return self._release_locks.setdefault(service, threading.Lock())

    @property
    def lock_path(self) -> Path:
        return self.state_path.with_suffix(".lock")

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def _empty(self) -> State:
        return State(environment=self.environment, region=self.region, app_name=self.app_name)

    def load(self) -> State:
        """
        Load state from file.

        Returns:
            State object; an empty state if the file does not exist yet

        Raises:
            StateError: If state file is corrupted or invalid
        """
        if not self.state_path.exists():
            return self._empty()

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {self.state_path}: {e}", cause=e)

        try:
            return State.from_dict(data)
        except ValidationError as e:
            raise StateError(f"State file {self.state_path} is invalid: {e}", cause=e)

    def save(self, state: State) -> None:
        """
        Save state to file.

        Args:
            state: State object to save

        Raises:
            StateError: If state cannot be saved
        """
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        state.updated_at = utcnow()

        temp_path = self.state_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            temp_path.replace(self.state_path)
        except OSError as e:
            raise StateError(f"Failed to save state file: {e}", cause=e)

    def _acquire_file_lock(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start_time > self.lock_timeout:
                    os.close(fd)
                    raise StateLockError(
                        f"Failed to acquire lock on {self.state_path} after {self.lock_timeout}s",
                        suggestions=["Another fargate-deploy process is running against this environment"]
                    )
                time.sleep(0.1)

        self._lock_fd = fd

    def _release_file_lock(self) -> None:
        if self._lock_fd is not None:
            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                os.close(self._lock_fd)
            finally:
                self._lock_fd = None

    @contextmanager
    def transaction(self) -> Iterator[State]:
        """Lock, load, yield the state for mutation, then save it.

        Nested transactions on the same thread reuse the outer lock and the
        outer save. The state is not saved if the block raises.
        """
        with self._thread_lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._current
                finally:
                    self._depth -= 1
                return

            self._acquire_file_lock()
            self._depth = 1
            try:
                self._current = self.load()
                yield self._current
                self.save(self._current)
            finally:
                self._depth = 0
                self._current = None
                self._release_file_lock()

    def snapshot(self) -> State:
        """Read a consistent copy of the state."""
        with self._thread_lock:
            if self._current is not None:
                return self._current.model_copy(deep=True)
            return self.load()

    # Resource records

    def record_resource(self, record: ResourceRecord) -> ResourceRecord:
        """
        Insert or update a resource record.

        ``created_at`` of an existing record is preserved.
        """
        with self.transaction() as state:
            existing = state.resources.get(record.id)
            now = utcnow()
            if existing is not None:
                record = record.model_copy(update={"created_at": existing.created_at, "updated_at": now})
            else:
                record = record.model_copy(update={"created_at": now, "updated_at": now})
            state.resources[record.id] = record
        logger.debug(f"Recorded resource {record.id} ({record.physical_id})")
        return record

    def remove_resource(self, resource_id: str) -> Optional[ResourceRecord]:
        """Remove a resource record. Only explicit destruction calls this."""
        with self.transaction() as state:
            removed = state.resources.pop(resource_id, None)
        if removed is not None:
            logger.debug(f"Removed resource record {resource_id}")
        return removed

    def get_resource(self, resource_id: str) -> Optional[ResourceRecord]:
        return self.snapshot().resources.get(resource_id)

    # Deployment attempts

    def begin_attempt(self, attempt: DeploymentAttempt) -> DeploymentAttempt:
        """
        Record a new deployment attempt.

        Raises:
            ReleaseInProgressError: If the service already has an active attempt
        """
        with self.transaction() as state:
            for existing in state.attempts_for(attempt.service):
                if existing.is_active:
                    raise ReleaseInProgressError(
                        f"Release {existing.attempt_id} for {attempt.service} is still "
                        f"{existing.stage.value}",
                        context=ErrorContext(attempt_id=existing.attempt_id, operation="release"),
                    )
            state.attempts.append(attempt)
        logger.debug(f"Began attempt {attempt.attempt_id} for {attempt.service}")
        return attempt

    def update_attempt(self, attempt: DeploymentAttempt) -> DeploymentAttempt:
        """Persist the current stage and fields of an attempt."""
        with self.transaction() as state:
            for index, existing in enumerate(state.attempts):
                if existing.attempt_id == attempt.attempt_id:
                    state.attempts[index] = attempt.model_copy(deep=True)
                    break
            else:
                raise StateError(f"Unknown deployment attempt: {attempt.attempt_id}")
        return attempt

    def active_attempts(self, service: str) -> List[DeploymentAttempt]:
        return [a for a in self.snapshot().attempts_for(service) if a.is_active]

    def latest_attempt(
        self, service: str, outcome: Optional[str] = None
    ) -> Optional[DeploymentAttempt]:
        """Most recent attempt for a service, optionally filtered by outcome."""
        attempts = self.snapshot().attempts_for(service)
        for attempt in reversed(attempts):
            if outcome is None or attempt.outcome == outcome:
                return attempt
        return None
