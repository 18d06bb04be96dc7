"""Tests for the plan executor."""

import pytest

from stackforge.config.parser import Config
from stackforge.orchestrator.builder import GraphBuilder
from stackforge.orchestrator.executor import ExecutionStatus, Executor
from stackforge.orchestrator.planner import Plan, Planner
from stackforge.provisioners.base import ChangeType
from stackforge.utils.errors import DependencyError, ProviderError


def thing(name, **attributes):
    return {"type": "test_thing", "name": name, "attributes": {"name": name, **attributes}}


@pytest.fixture
def executor(provider, state_manager, retry_strategy):
    return Executor(provider, state_manager, parallelism=4, retry_strategy=retry_strategy)


@pytest.fixture
def plan_for(provider, state_manager):
    """Plan a list of resources against the current State Store."""
    def make(resources, overrides=None, variables=None):
        data = {"provider": {"region": "us-east-2"}, "variables": variables or {}, "resources": resources}
        graph = GraphBuilder(Config.from_dict(data).stack, environ={}).build(overrides)
        return Planner(provider.schemas).create_plan(graph, state_manager.read())
    return make


class TestExecution:
    """Test successful execution."""

    def test_applies_webserver_stack(self, executor, state_manager, cloud, provider, webserver_stack):
        graph = GraphBuilder(Config.from_dict(webserver_stack).stack, environ={}).build({"server_port": 8080})
        plan = Planner(provider.schemas).create_plan(graph, state_manager.read())

        result = executor.execute(plan)

        assert result.is_success()
        assert result.status == ExecutionStatus.SUCCESS
        assert set(result.completed_addresses) == {a.address for a in plan.actions}
        state = state_manager.read()
        assert len(state.resources) == 5

        sg_id = state.get_resource("aws_security_group.instance").computed["id"]
        template = state.get_resource("aws_launch_template.web")
        assert template.attributes["vpc_security_group_ids"] == [sg_id]
        assert template.dependencies == ["aws_security_group.instance"]

        asg = state.get_resource("aws_autoscaling_group.web")
        assert asg.attributes["load_balancers"] == ["web-elb"]
        assert asg.attributes["launch_template"]["id"] == template.computed["id"]

    def test_dependencies_complete_first(self, executor, cloud, plan_for):
        plan = plan_for([thing("a"), thing("b", peer="${test_thing.a.id}"), thing("c", peer="${test_thing.b.arn}")])

        result = executor.execute(plan)

        assert result.completed_addresses == ["test_thing.a", "test_thing.b", "test_thing.c"]
        assert [call[2] for call in cloud.operations("create")] == ["a", "b", "c"]

    def test_progress_events(self, executor, plan_for):
        events = []
        plan = plan_for([thing("a")])

        executor.execute(plan, progress_callback=lambda addr, status, msg: events.append((addr, status, msg)))

        assert events == [
            ("test_thing.a", ExecutionStatus.IN_PROGRESS, "create"),
            ("test_thing.a", ExecutionStatus.SUCCESS, None),
        ]

    def test_parallelism_bounds_in_flight_actions(self, provider, state_manager, retry_strategy, cloud, plan_for):
        for name in "abcdef":
            cloud.delay("create", "test_thing", name, 0.05)
        executor = Executor(provider, state_manager, parallelism=2, retry_strategy=retry_strategy)

        result = executor.execute(plan_for([thing(name) for name in "abcdef"]))

        assert result.is_success()
        assert cloud.max_in_flight <= 2

    def test_invalid_parallelism(self, provider, state_manager):
        with pytest.raises(ValueError):
            Executor(provider, state_manager, parallelism=0)


class TestRetries:
    """Test transient and permanent provider failures."""

    def test_transient_errors_retried(self, executor, cloud, plan_for):
        cloud.fail("create", "test_thing", "a", ProviderError("Throttling: Rate exceeded", transient=True), times=2)

        result = executor.execute(plan_for([thing("a")]))

        assert result.is_success()
        assert result.attempts == {"test_thing.a": 3}
        assert len(cloud.operations("create")) == 3

    def test_retries_exhausted(self, executor, cloud, plan_for):
        cloud.fail("create", "test_thing", "a", ProviderError("Throttling: Rate exceeded", transient=True), times=10)

        result = executor.execute(plan_for([thing("a")]))

        assert result.status == ExecutionStatus.FAILED
        # max_retries=5 means six attempts
        assert result.failed[0].attempts == 6
        assert result.error.message == "Throttling: Rate exceeded"

    def test_unexpected_exception_becomes_provider_error(self, executor, cloud, plan_for):
        cloud.fail("create", "test_thing", "a", RuntimeError("boom"))

        result = executor.execute(plan_for([thing("a")]))

        assert isinstance(result.error, ProviderError)
        assert "boom" in result.error.message
        assert result.error.resource_id == "test_thing.a"


class TestAbort:
    """Test behaviour after a permanent failure."""

    def test_permanent_failure_aborts_remaining_plan(
        self, provider, state_manager, retry_strategy, cloud, plan_for
    ):
        message = "InvalidParameterValue: Value (b) for parameter GroupName is invalid"
        cloud.fail("create", "test_thing", "b", ProviderError(message))
        executor = Executor(provider, state_manager, parallelism=1, retry_strategy=retry_strategy)
        plan = plan_for([thing("a"), thing("b", peer="${test_thing.a.id}"), thing("c")])

        result = executor.execute(plan)

        assert result.status == ExecutionStatus.FAILED
        assert result.completed_addresses == ["test_thing.a"]
        assert [r.address for r in result.failed] == ["test_thing.b"]
        assert result.skipped == ["test_thing.c"]
        assert result.error.message == message
        assert result.failed[0].attempts == 1
        # Only the completed prefix is recorded
        assert set(state_manager.read().resources) == {"test_thing.a"}

    def test_in_flight_actions_finish(self, provider, state_manager, retry_strategy, cloud, plan_for):
        cloud.fail("create", "test_thing", "a", ProviderError("AccessDenied: not allowed"))
        cloud.delay("create", "test_thing", "b", 0.3)
        executor = Executor(provider, state_manager, parallelism=2, retry_strategy=retry_strategy)

        result = executor.execute(plan_for([thing("a"), thing("b"), thing("c")]))

        assert result.status == ExecutionStatus.FAILED
        assert result.completed_addresses == ["test_thing.b"]
        assert result.skipped == ["test_thing.c"]
        assert "test_thing.b" in state_manager.read().resources

    def test_skipped_actions_reported(self, provider, state_manager, retry_strategy, cloud, plan_for):
        cloud.fail("create", "test_thing", "a", ProviderError("AccessDenied: not allowed"))
        executor = Executor(provider, state_manager, parallelism=1, retry_strategy=retry_strategy)
        events = []

        executor.execute(
            plan_for([thing("a"), thing("b")]),
            progress_callback=lambda addr, status, msg: events.append((addr, status))
        )

        assert ("test_thing.b", ExecutionStatus.SKIPPED) in events

    def test_cancel_stops_new_actions(self, provider, state_manager, retry_strategy, plan_for):
        executor = Executor(provider, state_manager, parallelism=1, retry_strategy=retry_strategy)

        def cancel_after_first(address, status, message):
            if address == "test_thing.a" and status == ExecutionStatus.SUCCESS:
                executor.cancel()

        result = executor.execute(plan_for([thing("a"), thing("b"), thing("c")]), cancel_after_first)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.completed_addresses == ["test_thing.a"]
        assert result.skipped == ["test_thing.b", "test_thing.c"]
        assert executor.cancelled


class TestChanges:
    """Test update, replace and delete handling."""

    def test_update_sends_changed_keys(self, executor, cloud, state_manager, plan_for):
        executor.execute(plan_for([thing("a", size=1)]))
        created_id = state_manager.get_resource("test_thing.a").computed["id"]

        plan = plan_for([thing("a", size=2)])
        assert plan.actions[0].change_type == ChangeType.UPDATE
        result = executor.execute(plan)

        assert result.is_success()
        assert cloud.operations("update") == [("update", "test_thing", "a")]
        record = state_manager.get_resource("test_thing.a")
        assert record.attributes["size"] == 2
        assert record.computed["id"] == created_id

    def test_replace_deletes_then_creates(self, executor, cloud, state_manager, plan_for):
        executor.execute(plan_for([thing("a", zone="z1")]))
        old_id = state_manager.get_resource("test_thing.a").computed["id"]

        plan = plan_for([thing("a", zone="z2")])
        assert plan.actions[0].change_type == ChangeType.REPLACE
        result = executor.execute(plan)

        assert result.is_success()
        assert cloud.calls[-2:] == [("delete", "test_thing", "a"), ("create", "test_thing", "a")]
        assert state_manager.get_resource("test_thing.a").computed["id"] != old_id
        assert old_id not in cloud.resources

    def test_orphan_deleted(self, executor, cloud, state_manager, plan_for):
        executor.execute(plan_for([thing("a"), thing("b")]))

        result = executor.execute(plan_for([thing("a")]))

        assert result.completed_addresses == ["test_thing.b"]
        assert result.completed[0].change_type == ChangeType.DELETE
        assert set(state_manager.read().resources) == {"test_thing.a"}

    def test_missing_dependency_in_state(self, executor, plan_for):
        full = plan_for([thing("a"), thing("b", peer="${test_thing.a.id}")])
        partial = Plan(actions=[full.get_action("test_thing.b")], state_serial=full.state_serial)

        result = executor.execute(partial)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, DependencyError)
        assert result.error.resource_id == "test_thing.b"
