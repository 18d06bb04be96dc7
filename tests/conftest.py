"""Shared fixtures: an in-memory provider, a temporary State Store and stack configs."""

import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from stackforge.config.parser import Config
from stackforge.provisioners.autoscaling_group import AutoScalingGroupProvisioner
from stackforge.provisioners.base import BaseProvisioner, Provider, ResourceSchema
from stackforge.provisioners.elb import ClassicLoadBalancerProvisioner
from stackforge.provisioners.launch_template import LaunchTemplateProvisioner
from stackforge.provisioners.security_group import SecurityGroupProvisioner
from stackforge.state.manager import StateManager
from stackforge.utils.retry import RetryStrategy


THING_SCHEMA = ResourceSchema(
    type="test_thing",
    immutable=frozenset({"zone"}),
    unique=(("name",),),
    computed=frozenset({"id", "arn"}),
    required=frozenset({"name"}),
)


class FakeCloud:
    """Records every provider call and lets tests inject failures and delays."""

    def __init__(self):
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, List[Exception]] = defaultdict(list)
        self.delays: Dict[tuple, float] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0
        self._lock = threading.Lock()

    def fail(self, operation: str, resource_type: str, name: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls for (operation, type, name) raise ``error``."""
        self.failures[(operation, resource_type, name)].extend([error] * times)

    def delay(self, operation: str, resource_type: str, name: str, seconds: float) -> None:
        self.delays[(operation, resource_type, name)] = seconds

    def next_id(self, prefix: str) -> str:
        with self._lock:
            self._counter += 1
            return f"{prefix}-{self._counter:04d}"

    def call(self, operation: str, resource_type: str, name: Optional[str]) -> None:
        key = (operation, resource_type, name)
        with self._lock:
            self.calls.append(key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            pending = self.failures.get(key)
            error = pending.pop(0) if pending else None
        try:
            if key in self.delays:
                time.sleep(self.delays[key])
            if error is not None:
                raise error
        finally:
            with self._lock:
                self.in_flight -= 1

    def operations(self, operation: Optional[str] = None) -> List[tuple]:
        return [call for call in self.calls if operation is None or call[0] == operation]


class FakeProvisioner(BaseProvisioner):
    """Keeps resources in a FakeCloud; computed values derive from the id."""

    def __init__(self, schema: ResourceSchema, cloud: FakeCloud):
        self.schema = schema
        self.cloud = cloud

    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        self.cloud.call("create", self.schema.type, attributes.get("name"))
        resource_id = self.cloud.next_id(self.schema.type.split("_")[-1])
        self.cloud.resources[resource_id] = {"type": self.schema.type, "attributes": dict(attributes)}
        return self._computed(resource_id)

    def read(self, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        stored = self.cloud.resources.get(computed.get("id"))
        if stored is None:
            return None
        return self._computed(computed["id"])

    def update(self, computed, attributes, previous, changed) -> Dict[str, Any]:
        self.cloud.call("update", self.schema.type, attributes.get("name"))
        self.cloud.resources[computed["id"]]["attributes"] = dict(attributes)
        return dict(computed)

    def delete(self, computed: Dict[str, Any]) -> None:
        stored = self.cloud.resources.get(computed.get("id"), {})
        self.cloud.call("delete", self.schema.type, stored.get("attributes", {}).get("name"))
        self.cloud.resources.pop(computed.get("id"), None)

    def _computed(self, resource_id: str) -> Dict[str, Any]:
        computed = {name: f"{resource_id}/{name}" for name in sorted(self.schema.computed)}
        computed["id"] = resource_id
        return computed


class FakeProvider(Provider):
    """Provider with the real AWS schemas and an in-memory cloud."""

    name = "fake"

    def __init__(self, cloud: FakeCloud):
        schemas = [
            SecurityGroupProvisioner.schema,
            LaunchTemplateProvisioner.schema,
            ClassicLoadBalancerProvisioner.schema,
            AutoScalingGroupProvisioner.schema,
            THING_SCHEMA,
        ]
        super().__init__({schema.type: FakeProvisioner(schema, cloud) for schema in schemas})
        self.cloud = cloud
        self.configured = False

    def configure(self) -> None:
        self.configured = True


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def provider(cloud):
    return FakeProvider(cloud)


@pytest.fixture
def state_manager(tmp_path):
    return StateManager(str(tmp_path / "state.json"), lock_timeout=1)


@pytest.fixture
def retry_strategy():
    """Retries without waiting."""
    return RetryStrategy(max_retries=5, base_delay=0.0, jitter=False, sleep=lambda _: None)


@pytest.fixture
def make_config():
    """Build a validated Config from resources (and optional variables/outputs)."""
    def make(resources, variables=None, outputs=None, engine=None):
        data = {
            "provider": {"name": "aws", "region": "us-east-2"},
            "variables": variables or {},
            "resources": resources,
            "outputs": outputs or {},
        }
        if engine:
            data["engine"] = engine
        return Config.from_dict(data)
    return make


@pytest.fixture
def webserver_stack():
    """The webserver cluster: two security groups, launch template, ELB and ASG."""
    return {
        "provider": {"name": "aws", "region": "us-east-2"},
        "variables": {
            "server_port": {"type": "number", "description": "HTTP port"},
            "ami_id": {"type": "string", "default": "ami-0c55b159cbfafe1f0"},
        },
        "resources": [
            {
                "type": "aws_security_group",
                "name": "instance",
                "attributes": {
                    "name": "web-instance",
                    "ingress": [{
                        "from_port": "${var.server_port}",
                        "to_port": "${var.server_port}",
                        "protocol": "tcp",
                        "cidr_blocks": ["0.0.0.0/0"],
                    }],
                },
            },
            {
                "type": "aws_security_group",
                "name": "elb",
                "attributes": {
                    "name": "web-elb",
                    "ingress": [{"from_port": 80, "to_port": 80, "protocol": "tcp", "cidr_blocks": ["0.0.0.0/0"]}],
                },
            },
            {
                "type": "aws_launch_template",
                "name": "web",
                "attributes": {
                    "name": "web-lt",
                    "image_id": "${var.ami_id}",
                    "instance_type": "t3.micro",
                    "vpc_security_group_ids": ["${aws_security_group.instance.id}"],
                    "user_data": "busybox httpd -f -p ${var.server_port}",
                },
            },
            {
                "type": "aws_elb",
                "name": "web",
                "attributes": {
                    "name": "web-elb",
                    "availability_zones": ["us-east-2a", "us-east-2b"],
                    "security_groups": ["${aws_security_group.elb.id}"],
                    "listener": [{
                        "lb_port": 80,
                        "lb_protocol": "http",
                        "instance_port": "${var.server_port}",
                        "instance_protocol": "http",
                    }],
                },
            },
            {
                "type": "aws_autoscaling_group",
                "name": "web",
                "attributes": {
                    "name": "web-asg",
                    "launch_template": {"id": "${aws_launch_template.web.id}"},
                    "availability_zones": ["us-east-2a", "us-east-2b"],
                    "load_balancers": ["${aws_elb.web.name}"],
                    "min_size": 2,
                    "max_size": 10,
                },
            },
        ],
        "outputs": {
            "elb_dns_name": {"value": "${aws_elb.web.dns_name}"},
        },
    }
