"""Tests for the planner."""

import pytest

from stackforge.config.parser import Config
from stackforge.orchestrator.builder import GraphBuilder
from stackforge.orchestrator.planner import Planner
from stackforge.orchestrator.references import UNKNOWN
from stackforge.provisioners.base import ChangeType
from stackforge.state.models import RemoteState, ResourceState
from stackforge.utils.errors import (
    PlanConflictError,
    UnresolvedReferenceError,
    ValidationError,
)


def make_graph(resources, overrides=None, variables=None):
    data = {"provider": {"region": "us-east-2"}, "variables": variables or {}, "resources": resources}
    return GraphBuilder(Config.from_dict(data).stack, environ={}).build(overrides)


def record(address, attributes, computed=None, dependencies=(), index=0):
    resource_type, name = address.split(".")
    return ResourceState(
        address=address,
        type=resource_type,
        name=name,
        attributes=attributes,
        computed=computed if computed is not None else {"id": f"{name}-id", "arn": f"arn:{name}"},
        dependencies=list(dependencies),
        index=index,
    )


def make_state(*records, serial=3):
    return RemoteState(serial=serial, resources={r.address: r for r in records})


def thing(name, **attributes):
    return {"type": "test_thing", "name": name, "attributes": {"name": name, **attributes}}


@pytest.fixture
def planner(provider):
    return Planner(provider.schemas)


class TestCreatePlan:
    """Test planning against empty and populated state."""

    def test_first_plan_creates_everything(self, planner, webserver_stack):
        graph = GraphBuilder(Config.from_dict(webserver_stack).stack, environ={}).build({"server_port": 8080})
        plan = planner.create_plan(graph, RemoteState())

        assert [a.address for a in plan.actions] == [
            "aws_security_group.instance",
            "aws_security_group.elb",
            "aws_launch_template.web",
            "aws_elb.web",
            "aws_autoscaling_group.web",
        ]
        assert all(a.change_type == ChangeType.CREATE for a in plan.actions)
        assert plan.summary() == {"create": 5, "update": 0, "replace": 0, "delete": 0, "no_change": 0}

    def test_references_to_new_resources_are_unknown(self, planner, webserver_stack):
        graph = GraphBuilder(Config.from_dict(webserver_stack).stack, environ={}).build({"server_port": 8080})
        plan = planner.create_plan(graph, RemoteState())

        elb = plan.get_action("aws_elb.web")
        assert elb.attributes["security_groups"] == [UNKNOWN]
        assert elb.wait_for == ["aws_security_group.elb"]

        asg = plan.get_action("aws_autoscaling_group.web")
        assert asg.attributes["launch_template"] == {"id": UNKNOWN}
        # Non-computed attributes are known from configuration
        assert asg.attributes["load_balancers"] == ["web-elb"]
        assert asg.wait_for == ["aws_launch_template.web", "aws_elb.web"]

    def test_plan_records_serial_and_outputs(self, planner, webserver_stack):
        graph = GraphBuilder(Config.from_dict(webserver_stack).stack, environ={}).build({"server_port": 8080})
        plan = planner.create_plan(graph, make_state(serial=7))

        assert plan.state_serial == 7
        assert set(plan.outputs) == {"elb_dns_name"}
        assert not plan.destroy

    def test_unchanged_resources(self, planner):
        graph = make_graph([thing("a"), thing("b", peer="${test_thing.a.id}")])
        state = make_state(
            record("test_thing.a", {"name": "a"}, index=0),
            record("test_thing.b", {"name": "b", "peer": "a-id"}, dependencies=["test_thing.a"], index=1),
        )

        plan = planner.create_plan(graph, state)

        assert plan.is_empty()
        assert plan.unchanged == ["test_thing.a", "test_thing.b"]

    def test_planning_is_deterministic(self, planner, webserver_stack):
        graph = GraphBuilder(Config.from_dict(webserver_stack).stack, environ={}).build({"server_port": 8080})
        first = planner.create_plan(graph, RemoteState())
        second = planner.create_plan(graph, RemoteState())

        assert [(a.address, a.wait_for) for a in first.actions] == \
            [(a.address, a.wait_for) for a in second.actions]


class TestChangeTypes:
    """Test update versus replace decisions."""

    def test_mutable_change_updates(self, planner):
        graph = make_graph([thing("a", size=2)])
        state = make_state(record("test_thing.a", {"name": "a", "size": 1}))

        action = planner.create_plan(graph, state).get_action("test_thing.a")

        assert action.change_type == ChangeType.UPDATE
        assert action.changed_attributes == ["size"]
        assert action.diffs[0].before == 1
        assert action.diffs[0].after == 2
        assert not action.diffs[0].forces_replacement

    def test_removed_attribute_updates(self, planner):
        graph = make_graph([thing("a")])
        state = make_state(record("test_thing.a", {"name": "a", "size": 1}))

        action = planner.create_plan(graph, state).get_action("test_thing.a")

        assert action.change_type == ChangeType.UPDATE
        assert action.diffs[0].after is None

    def test_immutable_change_replaces(self, planner):
        graph = make_graph([thing("a", zone="z2", size=2)])
        state = make_state(record("test_thing.a", {"name": "a", "zone": "z1", "size": 1}))

        action = planner.create_plan(graph, state).get_action("test_thing.a")

        assert action.change_type == ChangeType.REPLACE
        assert "zone" in action.reason
        assert [d.path for d in action.diffs if d.forces_replacement] == ["zone"]

    def test_dependent_of_replaced_resource_sees_unknown(self, planner):
        graph = make_graph([thing("a", zone="z2"), thing("b", peer="${test_thing.a.id}")])
        state = make_state(
            record("test_thing.a", {"name": "a", "zone": "z1"}, index=0),
            record("test_thing.b", {"name": "b", "peer": "a-id"}, dependencies=["test_thing.a"], index=1),
        )

        plan = planner.create_plan(graph, state)
        dependent = plan.get_action("test_thing.b")

        assert dependent.change_type == ChangeType.UPDATE
        assert dependent.attributes["peer"] is UNKNOWN
        assert dependent.wait_for == ["test_thing.a"]

    def test_volatile_attribute_unknown_after_update(self, planner):
        resources = [
            {"type": "aws_launch_template", "name": "web", "attributes": {
                "name": "web-lt", "image_id": "ami-2", "instance_type": "t3.micro"}},
            {"type": "aws_autoscaling_group", "name": "web", "attributes": {
                "name": "web-asg", "min_size": 1, "max_size": 2,
                "launch_template": {
                    "id": "${aws_launch_template.web.id}",
                    "version": "${aws_launch_template.web.latest_version}",
                }}},
        ]
        state = make_state(
            record("aws_launch_template.web",
                   {"name": "web-lt", "image_id": "ami-1", "instance_type": "t3.micro"},
                   computed={"id": "lt-1", "latest_version": 1, "default_version": 1}, index=0),
            record("aws_autoscaling_group.web",
                   {"name": "web-asg", "min_size": 1, "max_size": 2,
                    "launch_template": {"id": "lt-1", "version": 1}},
                   dependencies=["aws_launch_template.web"], index=1),
        )

        plan = planner.create_plan(make_graph(resources), state)

        assert plan.get_action("aws_launch_template.web").change_type == ChangeType.UPDATE
        asg = plan.get_action("aws_autoscaling_group.web")
        assert asg.change_type == ChangeType.UPDATE
        assert asg.attributes["launch_template"] == {"id": "lt-1", "version": UNKNOWN}

    def test_reference_to_missing_attribute(self, planner):
        graph = make_graph([thing("a"), thing("b", peer="${test_thing.a.colour}")])

        with pytest.raises(UnresolvedReferenceError, match="colour"):
            planner.create_plan(graph, RemoteState())


class TestOrphans:
    """Test deletion of resources no longer configured."""

    def test_orphans_deleted_dependents_first(self, planner):
        state = make_state(
            record("test_thing.a", {"name": "a"}, index=0),
            record("test_thing.b", {"name": "b"}, dependencies=["test_thing.a"], index=1),
        )

        plan = planner.create_plan(make_graph([]), state)

        assert [(a.address, a.change_type) for a in plan.actions] == [
            ("test_thing.b", ChangeType.DELETE),
            ("test_thing.a", ChangeType.DELETE),
        ]
        assert plan.get_action("test_thing.a").wait_for == ["test_thing.b"]

    def test_orphan_deleted_before_replacing_its_dependency(self, planner):
        graph = make_graph([thing("a", zone="z2")])
        state = make_state(
            record("test_thing.a", {"name": "a", "zone": "z1"}, index=0),
            record("test_thing.b", {"name": "b"}, dependencies=["test_thing.a"], index=1),
        )

        plan = planner.create_plan(graph, state)

        assert [a.address for a in plan.actions] == ["test_thing.b", "test_thing.a"]
        assert plan.get_action("test_thing.a").change_type == ChangeType.REPLACE
        assert plan.get_action("test_thing.a").wait_for == ["test_thing.b"]

    def test_orphans_follow_desired_actions(self, planner):
        graph = make_graph([thing("new")])
        state = make_state(record("test_thing.old", {"name": "old"}))

        plan = planner.create_plan(graph, state)

        assert [a.address for a in plan.actions] == ["test_thing.new", "test_thing.old"]
        assert plan.get_action("test_thing.old").reason == "Resource no longer in configuration"


class TestValidation:
    """Test schema checks and conflicts."""

    def test_unsupported_type(self, planner):
        graph = make_graph([{"type": "aws_lambda_function", "name": "f", "attributes": {}}])

        with pytest.raises(ValidationError, match="Unsupported resource type"):
            planner.create_plan(graph, RemoteState())

    def test_missing_required_attribute(self, planner):
        graph = make_graph([{"type": "aws_elb", "name": "web", "attributes": {"name": "web"}}])

        with pytest.raises(ValidationError, match="listener"):
            planner.create_plan(graph, RemoteState())

    def test_unique_conflict(self, planner):
        graph = make_graph([
            {"type": "test_thing", "name": "a", "attributes": {"name": "shared"}},
            {"type": "test_thing", "name": "b", "attributes": {"name": "shared"}},
        ])

        with pytest.raises(PlanConflictError) as exc_info:
            planner.create_plan(graph, RemoteState())

        assert "test_thing.a" in str(exc_info.value)
        assert exc_info.value.resource_id == "test_thing.b"

    def test_security_group_unique_per_vpc(self, planner):
        graph = make_graph([
            {"type": "aws_security_group", "name": "a", "attributes": {"name": "web", "vpc_id": "vpc-1"}},
            {"type": "aws_security_group", "name": "b", "attributes": {"name": "web", "vpc_id": "vpc-2"}},
        ])

        plan = planner.create_plan(graph, RemoteState())
        assert len(plan.actions) == 2

    def test_unknown_values_never_conflict(self, planner):
        graph = make_graph([
            thing("src"),
            {"type": "test_thing", "name": "a", "attributes": {"name": "${test_thing.src.id}"}},
            {"type": "test_thing", "name": "b", "attributes": {"name": "${test_thing.src.id}"}},
        ])

        plan = planner.create_plan(graph, RemoteState())
        assert len(plan.actions) == 3


class TestDestroyPlan:
    """Test destruction plans."""

    def test_dependents_deleted_first(self, planner):
        state = make_state(
            record("test_thing.a", {"name": "a"}, index=0),
            record("test_thing.b", {"name": "b"}, dependencies=["test_thing.a"], index=1),
            record("test_thing.c", {"name": "c"}, dependencies=["test_thing.b"], index=2),
            record("test_thing.d", {"name": "d"}, index=3),
        )

        plan = planner.create_destroy_plan(state)

        assert plan.destroy
        assert plan.state_serial == 3
        assert [a.address for a in plan.actions] == [
            "test_thing.c", "test_thing.b", "test_thing.a", "test_thing.d",
        ]
        assert all(a.change_type == ChangeType.DELETE for a in plan.actions)

    def test_empty_state(self, planner):
        assert planner.create_destroy_plan(RemoteState()).is_empty()
