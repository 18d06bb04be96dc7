"""Tests for the command-line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner

from stackforge.cli.main import cli
from stackforge.utils.errors import ProviderError


@pytest.fixture
def stack_file(tmp_path, monkeypatch, webserver_stack):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "stack.yaml"
    path.write_text(yaml.safe_dump(webserver_stack))
    return path


@pytest.fixture
def invoke(stack_file, tmp_path, provider, retry_strategy):
    """Run the CLI against the in-memory provider."""
    factory_calls = []

    def factory(cfg, profile, region):
        factory_calls.append((profile, region))
        return provider

    def run(*args, input=None, variables=True):
        base = ["--config", str(stack_file), "--state", str(tmp_path / "state.json")]
        if variables:
            base += ["--var", "server_port=8080"]
        obj = {"provider_factory": factory, "environ": {}, "retry_strategy": retry_strategy}
        return CliRunner().invoke(cli, base + list(args), obj=obj, input=input)

    run.factory_calls = factory_calls
    return run


class TestValidateAndPlan:
    """Test commands that never change anything."""

    def test_validate(self, invoke, cloud):
        result = invoke("validate")

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "5 resources" in result.output
        assert cloud.calls == []

    def test_validate_missing_variable(self, invoke):
        result = invoke("validate", variables=False)

        assert result.exit_code == 1
        assert "server_port" in result.output

    def test_missing_config(self, tmp_path, monkeypatch, provider):
        monkeypatch.chdir(tmp_path)
        result = CliRunner().invoke(
            cli, ["--config", str(tmp_path / "absent.yaml"), "plan"],
            obj={"provider_factory": lambda cfg, profile, region: provider}
        )

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_plan(self, invoke, cloud):
        result = invoke("plan")

        assert result.exit_code == 0
        assert "Plan: 5 to create, 0 to update, 0 to replace, 0 to delete." in result.output
        assert "aws_autoscaling_group.web" in result.output
        assert cloud.calls == []

    def test_var_file(self, invoke, tmp_path):
        var_file = tmp_path / "prod.yaml"
        var_file.write_text("server_port: 8080\n")

        result = invoke("--var-file", str(var_file), "validate", variables=False)

        assert result.exit_code == 0

    def test_region_and_profile_passed_to_provider(self, invoke):
        invoke("--region", "eu-west-1", "--profile", "ops", "validate")
        assert invoke.factory_calls == [("ops", "eu-west-1")]


class TestApply:
    """Test apply and its follow-up commands."""

    def test_apply(self, invoke, cloud):
        result = invoke("apply", "--yes")

        assert result.exit_code == 0, result.output
        assert "Apply complete" in result.output
        assert "elb_dns_name" in result.output
        assert len(cloud.operations("create")) == 5

        again = invoke("plan")
        assert "No changes." in again.output

    def test_apply_declined(self, invoke, cloud):
        result = invoke("apply", input="n\n")

        assert result.exit_code == 0
        assert "Apply cancelled" in result.output
        assert cloud.calls == []

    def test_apply_failure_reports_partial_progress(self, invoke, cloud):
        cloud.fail("create", "aws_elb", "web-elb", ProviderError("DuplicateLoadBalancerName: web-elb already exists"))

        result = invoke("apply", "--yes")

        assert result.exit_code == 1
        assert "DuplicateLoadBalancerName: web-elb already exists" in result.output
        assert "Skipped:" in result.output
        assert "aws_autoscaling_group.web" in result.output

    def test_output(self, invoke, provider):
        invoke("apply", "--yes")

        single = invoke("output", "elb_dns_name")
        assert single.exit_code == 0
        assert single.output.strip().endswith("/dns_name")

        everything = invoke("--log-level", "error", "output", "--json")
        assert json.loads(everything.output)["elb_dns_name"].endswith("/dns_name")

    def test_output_unknown_name(self, invoke):
        invoke("apply", "--yes")

        result = invoke("output", "nope")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_destroy(self, invoke, cloud):
        invoke("apply", "--yes")

        result = invoke("destroy", "--yes")

        assert result.exit_code == 0
        assert "Destroy complete" in result.output
        assert cloud.resources == {}

    def test_destroy_nothing_recorded(self, invoke):
        result = invoke("destroy", "--yes")

        assert result.exit_code == 0
        assert "nothing to destroy" in result.output


class TestInitAndRefresh:
    """Test init and refresh."""

    def test_init(self, invoke, provider, tmp_path):
        result = invoke("init")

        assert result.exit_code == 0
        assert "Initialized" in result.output
        assert provider.configured
        assert (tmp_path / "state.json").exists()

    def test_refresh(self, invoke):
        invoke("apply", "--yes")

        result = invoke("refresh")

        assert result.exit_code == 0
        assert "No drift" in result.output
