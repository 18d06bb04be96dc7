"""Plan executor with dependency-driven parallel execution and progress tracking."""

import heapq
import threading
from typing import Dict, List, Optional, Callable, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum

from stackforge.orchestrator.planner import Plan, PlannedAction
from stackforge.orchestrator.references import Reference, substitute, walk_path
from stackforge.provisioners.base import ChangeType, Provider
from stackforge.state.manager import StateManager
from stackforge.state.models import ResourceState
from stackforge.utils.errors import (
    DependencyError,
    EngineError,
    ErrorContext,
    error_handler,
)
from stackforge.utils.logging import LogContext, get_logger
from stackforge.utils.retry import RetryError, RetryStrategy

logger = get_logger(__name__)


class ExecutionStatus(Enum):
    """Status of execution."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ActionResult:
    """Result of executing a single planned action."""

    address: str
    change_type: ChangeType
    status: ExecutionStatus
    error: Optional[EngineError] = None
    attempts: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if execution was successful."""
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        """Check if execution failed."""
        return self.status == ExecutionStatus.FAILED


@dataclass
class ApplyResult:
    """Outcome of executing a plan.

    ``completed`` is in completion order. After an abort it is exactly the
    prefix that reached the provider and the State Store.
    """

    status: ExecutionStatus
    completed: List[ActionResult] = field(default_factory=list)
    failed: List[ActionResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    @property
    def error(self) -> Optional[EngineError]:
        """Error of the first failing action."""
        return self.failed[0].error if self.failed else None

    @property
    def completed_addresses(self) -> List[str]:
        return [result.address for result in self.completed]

    @property
    def attempts(self) -> Dict[str, int]:
        return {result.address: result.attempts for result in self.completed + self.failed}

    def is_success(self) -> bool:
        """Check if every action was applied."""
        return self.status == ExecutionStatus.SUCCESS


# Type alias for progress callback
ProgressCallback = Callable[[str, ExecutionStatus, Optional[str]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Executor:
    """Runs plan actions on a worker pool as soon as their dependencies succeed."""

    def __init__(
        self,
        provider: Provider,
        state_manager: StateManager,
        parallelism: int = 10,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize executor.

        Args:
            provider: Provider that carries out resource operations
            state_manager: State Store updated after every confirmed change
            parallelism: Maximum number of actions in flight
            retry_strategy: Backoff policy for transient provider errors
        """
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self.provider = provider
        self.state_manager = state_manager
        self.parallelism = parallelism
        self.retry_strategy = retry_strategy or RetryStrategy()
        self._cancelled = threading.Event()
        self.logger = get_logger(__name__)

    def cancel(self) -> None:
        """Stop starting new actions; in-flight actions run to completion."""
        if not self._cancelled.is_set():
            self.logger.warning("Cancellation requested; waiting for in-flight actions")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(self, plan: Plan, progress_callback: Optional[ProgressCallback] = None) -> ApplyResult:
        """Execute a plan.

        Args:
            plan: Plan to execute
            progress_callback: Called with (address, status, message) when an
                action starts and when it finishes

        Returns:
            ApplyResult with completed, failed and skipped actions
        """
        self._cancelled.clear()
        start_time = _utcnow()
        self.logger.info(
            f"Executing {len(plan.actions)} actions (parallelism={self.parallelism})..."
        )

        actions = {action.address: action for action in plan.actions}
        position = {action.address: i for i, action in enumerate(plan.actions)}
        waiting = {
            address: {dep for dep in action.wait_for if dep in actions}
            for address, action in actions.items()
        }
        dependents: Dict[str, List[str]] = {address: [] for address in actions}
        for address, deps in waiting.items():
            for dep in deps:
                dependents[dep].append(address)

        ready = [(position[a], a) for a, deps in waiting.items() if not deps]
        heapq.heapify(ready)
        started = set()
        completed: List[ActionResult] = []
        failed: List[ActionResult] = []
        aborted = False

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="stackforge") as pool:
            running: Dict[Future, str] = {}

            def submit_ready():
                while ready and len(running) < self.parallelism and not aborted and not self.cancelled:
                    _, address = heapq.heappop(ready)
                    started.add(address)
                    running[pool.submit(self._run_action, actions[address], progress_callback)] = address

            submit_ready()
            while running:
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: position[running[f]]):
                    address = running.pop(future)
                    result = future.result()
                    if result.is_success():
                        completed.append(result)
                        for dependent in dependents[address]:
                            waiting[dependent].discard(address)
                            if not waiting[dependent]:
                                heapq.heappush(ready, (position[dependent], dependent))
                    else:
                        failed.append(result)
                        if not aborted:
                            self.logger.error(
                                f"Aborting plan after failure of {address}; "
                                f"{len(running)} in-flight action(s) will finish"
                            )
                        aborted = True
                submit_ready()

        skipped = [action.address for action in plan.actions if action.address not in started]
        for address in skipped:
            if progress_callback:
                progress_callback(address, ExecutionStatus.SKIPPED, None)

        if failed:
            status = ExecutionStatus.FAILED
        elif skipped and self.cancelled:
            status = ExecutionStatus.CANCELLED
        else:
            status = ExecutionStatus.SUCCESS

        end_time = _utcnow()
        duration = (end_time - start_time).total_seconds()
        if status == ExecutionStatus.SUCCESS:
            self.logger.info(f"Applied {len(completed)} actions in {duration:.1f}s")
        else:
            self.logger.error(
                f"Execution {status.value}: {len(completed)} completed, "
                f"{len(failed)} failed, {len(skipped)} skipped"
            )

        return ApplyResult(
            status=status,
            completed=completed,
            failed=failed,
            skipped=skipped,
            start_time=start_time,
            end_time=end_time,
            duration=duration
        )

    def _run_action(self, action: PlannedAction, progress_callback: Optional[ProgressCallback]) -> ActionResult:
        """Run one action under its resource lock; never raises."""
        log = LogContext(self.logger, resource_id=action.address, operation=action.change_type.value)
        start_time = _utcnow()
        attempts = 0

        if progress_callback:
            progress_callback(action.address, ExecutionStatus.IN_PROGRESS, action.change_type.value)

        try:
            with self.state_manager.resource_lock(action.address):
                log.info(f"{action.change_type.value.capitalize()} {action.address}...")
                attempts = self._apply(action)
            status, error = ExecutionStatus.SUCCESS, None
        except _ActionFailed as e:
            status, error, attempts = ExecutionStatus.FAILED, e.error, e.attempts
        except EngineError as e:
            status, error = ExecutionStatus.FAILED, e
        except Exception as e:
            status = ExecutionStatus.FAILED
            error = error_handler.handle_exception(
                e, ErrorContext(resource_id=action.address, operation=action.change_type.value)
            )

        end_time = _utcnow()
        duration = (end_time - start_time).total_seconds()

        if error is not None:
            if error.context.resource_id is None:
                error.context.resource_id = action.address
            log.error(f"Failed to {action.change_type.value} {action.address}: {error}",
                      extra={'attempt': attempts, 'duration': duration})
        else:
            log.info(f"{action.address} done in {duration:.1f}s",
                     extra={'attempt': attempts, 'duration': duration})

        if progress_callback:
            progress_callback(action.address, status, str(error) if error else None)

        return ActionResult(
            address=action.address,
            change_type=action.change_type,
            status=status,
            error=error,
            attempts=attempts,
            start_time=start_time,
            end_time=end_time,
            duration=duration
        )

    def _apply(self, action: PlannedAction) -> int:
        """Carry out the action and record the result; returns provider attempts."""
        change_type = action.change_type
        address = action.address
        prior = self.state_manager.get_resource(address) if change_type != ChangeType.CREATE else None

        if change_type == ChangeType.DELETE:
            if prior is None:
                self.logger.debug(f"{address} is no longer recorded; nothing to delete")
                return 0
            attempts = self._call(self.provider.delete, prior.type, prior.computed)
            self.state_manager.remove(address)
            return attempts

        attributes = self.resolve_attributes(action)
        attempts = 0

        if change_type == ChangeType.UPDATE and prior is not None:
            changed = _changed_keys(prior.attributes, attributes)
            if changed:
                attempts, computed = self._call_value(
                    self.provider.update, prior.type, prior.computed, attributes, prior.attributes, changed
                )
            else:
                computed = prior.computed
            self._record(action, attributes, computed)
            return attempts

        if change_type == ChangeType.REPLACE and prior is not None:
            attempts += self._call(self.provider.delete, prior.type, prior.computed)
            self.state_manager.remove(address)

        create_attempts, computed = self._call_value(self.provider.create, action.resource_type, attributes)
        self._record(action, attributes, computed)
        return attempts + create_attempts

    def resolve_attributes(self, action: PlannedAction) -> Dict[str, Any]:
        """Substitute resource references with values recorded in the State Store.

        Raises:
            DependencyError: If a referenced resource or attribute is not recorded
        """
        def resolve(ref: Reference) -> Any:
            record = self.state_manager.get_resource(ref.target)
            if record is None:
                raise DependencyError(
                    f"{action.address} needs {ref.target}, which has not been applied",
                    resource_id=action.address
                )
            try:
                return walk_path(record.lookup(ref.attribute), ref.path)
            except KeyError:
                raise DependencyError(
                    f"{action.address} needs '${{{ref.expression}}}', which {ref.target} does not provide",
                    resource_id=action.address
                )

        return substitute(action.resource.attributes, resolve)

    def _call(self, func: Callable, *args) -> int:
        attempts, _ = self._call_value(func, *args)
        return attempts

    def _call_value(self, func: Callable, *args):
        try:
            result = self.retry_strategy.execute(func, *args)
        except RetryError as e:
            error = e.last_error
            if not isinstance(error, EngineError):
                error = error_handler.handle_exception(error)
            raise _ActionFailed(error, e.attempts) from e
        return result.attempts, result.value

    def _record(self, action: PlannedAction, attributes: Dict[str, Any], computed: Dict[str, Any]) -> None:
        resource = action.resource
        self.state_manager.write(action.address, ResourceState(
            address=action.address,
            type=resource.type,
            name=resource.name,
            attributes=attributes,
            computed=dict(computed or {}),
            dependencies=resource.dependencies,
            index=resource.index,
        ))


class _ActionFailed(Exception):
    """Carries a provider failure and the attempts it took out of ``_apply``."""

    def __init__(self, error: EngineError, attempts: int):
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


def _changed_keys(before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
    keys = list(after) + [k for k in before if k not in after]
    return [k for k in keys if before.get(k) != after.get(k) or (k in before) != (k in after)]
