"""YAML configuration parser for stackforge stacks."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from stackforge.config.models import (
    EngineSettings,
    OutputConfig,
    ProviderConfig,
    ResourceConfig,
    StackConfig,
    VariableConfig,
)
from stackforge.utils.errors import ConfigValidationError
from stackforge.utils.logging import get_logger

logger = get_logger(__name__)


class Config:
    """Configuration manager for a stack definition."""

    def __init__(self, config_path: str = "stack.yaml"):
        """Initialize configuration manager.

        Args:
            config_path: Path to the stack YAML file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.stack: Optional[StackConfig] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: str = "<memory>") -> "Config":
        """Build and validate a configuration from an already-parsed mapping."""
        config = cls(config_path)
        config.data = data or {}
        config._finish_load()
        return config

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}", cause=e)

        self._finish_load()
        logger.debug(
            f"Loaded {self.config_path}: {len(self.stack.resources)} resources, "
            f"{len(self.stack.variables)} variables, {len(self.stack.outputs)} outputs"
        )
        return self

    def _finish_load(self) -> None:
        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.stack = StackConfig(
            provider=ProviderConfig(**self.data["provider"]),
            engine=EngineSettings(**(self.data.get("engine") or {})),
            variables=self._parse_variables(),
            resources=self._parse_resources(),
            outputs=self._parse_outputs(),
        )

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        def collect(prefix: List[Any], model, payload: Any) -> None:
            if not isinstance(payload, dict):
                errors.append({"loc": prefix, "msg": "Must be a mapping"})
                return
            try:
                model(**payload)
            except PydanticValidationError as e:
                for error in e.errors():
                    errors.append({"loc": prefix + list(error["loc"]), "msg": error["msg"]})

        unknown = set(self.data) - {"provider", "engine", "variables", "resources", "outputs"}
        for key in sorted(unknown):
            errors.append({"loc": [key], "msg": f"Unknown top-level key '{key}'"})

        if "provider" not in self.data:
            errors.append({"loc": ["provider"], "msg": "Required field 'provider' is missing"})
        else:
            collect(["provider"], ProviderConfig, self.data["provider"])

        if self.data.get("engine") is not None:
            collect(["engine"], EngineSettings, self.data["engine"])

        variables = self.data.get("variables") or {}
        if not isinstance(variables, dict):
            errors.append({"loc": ["variables"], "msg": "Variables must be a mapping"})
        else:
            for var_name, var_data in variables.items():
                if var_data is None:
                    var_data = {}
                elif not isinstance(var_data, dict):
                    errors.append({"loc": ["variables", var_name], "msg": "Must be a mapping"})
                    continue
                collect(["variables", var_name], VariableConfig, {"name": var_name, **var_data})

        resources = self.data.get("resources") or []
        if not isinstance(resources, list):
            errors.append({"loc": ["resources"], "msg": "Resources must be a list"})
        else:
            for idx, resource_data in enumerate(resources):
                collect(["resources", idx], ResourceConfig, resource_data)

        outputs = self.data.get("outputs") or {}
        if not isinstance(outputs, dict):
            errors.append({"loc": ["outputs"], "msg": "Outputs must be a mapping"})
        else:
            for out_name, out_data in outputs.items():
                if not isinstance(out_data, dict):
                    out_data = {"value": out_data}
                collect(["outputs", out_name], OutputConfig, {"name": out_name, **out_data})

        return errors

    def _parse_variables(self) -> Dict[str, VariableConfig]:
        variables = self.data.get("variables") or {}
        return {
            name: VariableConfig(name=name, **(data or {}))
            for name, data in variables.items()
        }

    def _parse_resources(self) -> List[ResourceConfig]:
        return [ResourceConfig(**data) for data in self.data.get("resources") or []]

    def _parse_outputs(self) -> Dict[str, OutputConfig]:
        outputs = {}
        for name, data in (self.data.get("outputs") or {}).items():
            if not isinstance(data, dict):
                data = {"value": data}
            outputs[name] = OutputConfig(name=name, **data)
        return outputs

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary."""
        if self.stack is None:
            return {}
        return self.stack.model_dump()


def load_var_file(path: str) -> Dict[str, Any]:
    """Load variable overrides from a YAML or JSON file.

    Raises:
        ConfigValidationError: If the file is not a mapping of values
    """
    var_path = Path(path)
    if not var_path.exists():
        raise FileNotFoundError(f"Variable file not found: {var_path}")

    try:
        with open(var_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Failed to parse variable file {var_path}: {e}", cause=e)

    if not isinstance(data, dict):
        raise ConfigValidationError(f"Variable file {var_path} must contain a mapping")
    return data


def parse_var_assignments(assignments: List[str]) -> Dict[str, Any]:
    """Parse ``name=value`` command-line assignments.

    Values are decoded as YAML scalars so ``port=8080`` yields an int and
    ``zones=[a, b]`` a list; plain text stays a string.
    """
    values = {}
    for item in assignments:
        if "=" not in item:
            raise ConfigValidationError(f"Invalid variable assignment '{item}', expected name=value")
        name, raw = item.split("=", 1)
        name = name.strip()
        if not name:
            raise ConfigValidationError(f"Invalid variable assignment '{item}', empty name")
        try:
            values[name] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            values[name] = raw
    return values
