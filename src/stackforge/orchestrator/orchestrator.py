"""Main orchestrator that coordinates planning, execution and state."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from stackforge.config.parser import Config
from stackforge.orchestrator.builder import GraphBuilder
from stackforge.orchestrator.executor import (
    ApplyResult,
    ExecutionStatus,
    Executor,
    ProgressCallback,
)
from stackforge.orchestrator.planner import Plan, Planner
from stackforge.orchestrator.references import Reference, substitute, walk_path
from stackforge.orchestrator.resources import DesiredGraph, Output
from stackforge.provisioners.base import Provider
from stackforge.state.manager import StateManager
from stackforge.state.models import RemoteState
from stackforge.utils.errors import DependencyError
from stackforge.utils.logging import get_logger
from stackforge.utils.retry import RetryStrategy

logger = get_logger(__name__)


@dataclass
class DriftReport:
    """What a refresh found out about recorded resources."""

    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    def has_drift(self) -> bool:
        return bool(self.updated or self.removed)


class Orchestrator:
    """Coordinates the builder, planner, executor and State Store for one stack."""

    def __init__(
        self,
        config: Config,
        provider: Provider,
        state_manager: StateManager,
        variables: Optional[Dict[str, Any]] = None,
        parallelism: Optional[int] = None,
        environ: Optional[Mapping[str, str]] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize orchestrator.

        Args:
            config: Loaded configuration
            provider: Provider for the configured resource types
            state_manager: State Store
            variables: Variable overrides from the command line or var files
            parallelism: Overrides ``engine.parallelism``
            environ: Environment for ``STACKFORGE_VAR_*`` lookups
            retry_strategy: Overrides the backoff built from engine settings
        """
        self.config = config
        self.provider = provider
        self.state_manager = state_manager
        self.variables = dict(variables or {})
        self.environ = environ

        engine = config.stack.engine
        self.planner = Planner(provider.schemas)
        self.executor = Executor(
            provider=provider,
            state_manager=state_manager,
            parallelism=parallelism or engine.parallelism,
            retry_strategy=retry_strategy or RetryStrategy(
                max_retries=engine.max_retries,
                base_delay=engine.retry_base_delay,
                max_delay=engine.retry_max_delay
            )
        )
        self.logger = get_logger(__name__)

    def build(self) -> DesiredGraph:
        """Build the desired graph and check it against the provider schemas."""
        graph = GraphBuilder(self.config.stack, environ=self.environ).build(self.variables)
        self.planner.validate(graph)
        return graph

    def init(self) -> RemoteState:
        """Validate the configuration, check credentials and create the state file."""
        self.build()
        self.provider.configure()
        with self.state_manager:
            return self.state_manager.initialize()

    def plan(self) -> Plan:
        """Create a plan against the current state."""
        self.logger.info("Planning...")
        graph = self.build()
        return self.planner.create_plan(graph, self.state_manager.read())

    def plan_destroy(self) -> Plan:
        """Create a plan that deletes every recorded resource."""
        self.logger.info("Planning destruction...")
        return self.planner.create_destroy_plan(self.state_manager.read())

    def apply(self, plan: Optional[Plan] = None, progress_callback: Optional[ProgressCallback] = None) -> ApplyResult:
        """Execute a plan, creating one first if none is given.

        Outputs are evaluated and stored only when every action succeeded.

        Raises:
            StateConflictError: If state changed since the plan was made
            StateLockError: If another run holds the state lock
        """
        with self.state_manager:
            if plan is None:
                plan = self.plan()
            return self._execute(plan, progress_callback)

    def destroy(self, plan: Optional[Plan] = None, progress_callback: Optional[ProgressCallback] = None) -> ApplyResult:
        """Delete every recorded resource, dependents first."""
        with self.state_manager:
            if plan is None:
                plan = self.plan_destroy()
            return self._execute(plan, progress_callback)

    def cancel(self) -> None:
        self.executor.cancel()

    def _execute(self, plan: Plan, progress_callback: Optional[ProgressCallback]) -> ApplyResult:
        self.state_manager.check_serial(plan.state_serial)

        if plan.is_empty():
            self.logger.info("No changes to apply")
            result = ApplyResult(status=ExecutionStatus.SUCCESS)
        else:
            result = self.executor.execute(plan, progress_callback)

        if result.is_success():
            outputs = {} if plan.destroy else self.evaluate_outputs(plan.outputs)
            if outputs != self.state_manager.read().outputs:
                self.state_manager.set_outputs(outputs)
        return result

    def evaluate_outputs(self, outputs: Dict[str, Output]) -> Dict[str, Any]:
        """Resolve output expressions against the State Store.

        Raises:
            DependencyError: If an output refers to something not recorded
        """
        state = self.state_manager.read()

        def resolve(ref: Reference) -> Any:
            record = state.get_resource(ref.target)
            if record is None:
                raise DependencyError(f"Output refers to {ref.target}, which is not recorded")
            try:
                return walk_path(record.lookup(ref.attribute), ref.path)
            except KeyError as e:
                raise DependencyError(
                    f"Output refers to '${{{ref.expression}}}', which {ref.target} does not provide",
                    cause=e
                )

        return {name: substitute(output.value, resolve) for name, output in outputs.items()}

    def outputs(self) -> Dict[str, Any]:
        """Outputs stored by the last successful apply."""
        return self.state_manager.read().outputs

    def refresh(self) -> DriftReport:
        """Re-read every recorded resource and record what the provider reports.

        Resources the provider no longer knows are dropped from state.
        """
        report = DriftReport()
        with self.state_manager:
            for record in self.state_manager.read().ordered_resources():
                current = self.provider.read(record.type, record.computed)
                if current is None:
                    self.logger.warning(f"Drift: {record.address} no longer exists; removing it from state")
                    self.state_manager.remove(record.address)
                    report.removed.append(record.address)
                    continue

                merged = {**record.computed, **current}
                if merged != record.computed:
                    changed = sorted(k for k in merged if merged[k] != record.computed.get(k))
                    self.logger.warning(f"Drift: {record.address} changed {', '.join(changed)}")
                    record.computed = merged
                    self.state_manager.write(record.address, record)
                    report.updated.append(record.address)
                else:
                    report.unchanged.append(record.address)

        self.logger.info(
            f"Refresh complete: {len(report.updated)} updated, "
            f"{len(report.removed)} removed, {len(report.unchanged)} unchanged"
        )
        return report
