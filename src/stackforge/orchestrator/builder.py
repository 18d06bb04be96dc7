"""Resource graph builder: configuration in, validated desired graph out."""

import os
from typing import Any, Dict, List, Mapping, Optional

import yaml

from stackforge.config.models import StackConfig, VariableConfig
from stackforge.orchestrator.dependency_graph import DependencyGraph, EdgeKind
from stackforge.orchestrator.references import (
    EXPRESSION_PATTERN,
    Reference,
    find_references,
    substitute,
)
from stackforge.orchestrator.resources import DesiredGraph, Output, Resource
from stackforge.utils.errors import (
    DuplicateResourceError,
    MissingVariableError,
    UndeclaredVariableError,
    UnresolvedReferenceError,
    VariableTypeError,
)
from stackforge.utils.logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "STACKFORGE_VAR_"


class GraphBuilder:
    """Builds the desired graph for one run.

    Variable precedence, highest first: explicit overrides, ``STACKFORGE_VAR_*``
    environment variables, declared defaults.
    """

    def __init__(self, stack: StackConfig, environ: Optional[Mapping[str, str]] = None):
        """Initialize graph builder.

        Args:
            stack: Validated configuration
            environ: Environment used for ``STACKFORGE_VAR_*`` lookups
                (defaults to ``os.environ``)
        """
        self.stack = stack
        self.environ = os.environ if environ is None else environ
        self.logger = get_logger(__name__)

    def build(self, overrides: Optional[Dict[str, Any]] = None) -> DesiredGraph:
        """Resolve variables, extract references and validate the graph.

        Raises:
            MissingVariableError: A variable has no value and no default
            UndeclaredVariableError: An override names an unknown variable
            VariableTypeError: A value does not fit its declared type
            DuplicateResourceError: Two resources share an identity
            UnresolvedReferenceError: A reference has no target
            CycleError: References form a cycle
        """
        variables = self.resolve_variables(overrides or {})
        resources = self._build_resources(variables)

        graph = DependencyGraph()
        for resource in resources.values():
            graph.add_node(resource.address, order=resource.index)

        for resource in resources.values():
            for ref in resource.references:
                graph.add_dependency(resource.address, ref.target, EdgeKind.REFERENCE)
            for address in resource.depends_on:
                graph.add_dependency(resource.address, address, EdgeKind.EXPLICIT)

        graph.validate()
        outputs = self._build_outputs(variables, resources)

        self.logger.info(
            f"Built desired graph: {len(resources)} resources, "
            f"{len(graph.edge_kinds)} edges, {len(outputs)} outputs"
        )
        return DesiredGraph(resources=resources, graph=graph, variables=variables, outputs=outputs)

    def resolve_variables(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Pick a value for every declared variable."""
        declared = self.stack.variables

        for name in overrides:
            if name not in declared:
                raise UndeclaredVariableError(
                    f"Value given for undeclared variable '{name}'",
                    suggestions=[f"Declare '{name}' under 'variables' or drop the assignment"]
                )

        values = {}
        for name, variable in declared.items():
            env_key = f"{ENV_PREFIX}{name}"
            if name in overrides:
                raw, source = overrides[name], "override"
            elif env_key in self.environ:
                raw, source = self.environ[env_key], "environment"
            elif variable.has_default:
                raw, source = variable.default, "default"
            else:
                raise MissingVariableError(name)

            values[name] = self._coerce(variable, raw)
            self.logger.debug(f"Variable {name} taken from {source}")
        return values

    def _coerce(self, variable: VariableConfig, value: Any) -> Any:
        def fail(reason: str) -> VariableTypeError:
            return VariableTypeError(
                f"Variable '{variable.name}' expects type {variable.type}: {reason}"
            )

        if isinstance(value, str) and EXPRESSION_PATTERN.search(value):
            raise fail("variable values cannot contain references")

        kind = variable.type
        if kind == "any" or value is None:
            return value

        if kind == "string":
            if isinstance(value, (list, dict)):
                raise fail(f"got {type(value).__name__}")
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)

        if kind == "number":
            if isinstance(value, bool):
                raise fail("got bool")
            if isinstance(value, (int, float)):
                return value
            if isinstance(value, str):
                try:
                    return int(value)
                except ValueError:
                    try:
                        return float(value)
                    except ValueError:
                        raise fail(f"'{value}' is not a number")
            raise fail(f"got {type(value).__name__}")

        if kind == "bool":
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
            raise fail(f"'{value}' is not a bool")

        # list / map may arrive as text from the environment
        if isinstance(value, str):
            try:
                value = yaml.safe_load(value)
            except yaml.YAMLError:
                raise fail("value is not valid YAML")
        expected = list if kind == "list" else dict
        if not isinstance(value, expected):
            raise fail(f"got {type(value).__name__}")
        return value

    def _build_resources(self, variables: Dict[str, Any]) -> Dict[str, Resource]:
        resources: Dict[str, Resource] = {}
        declared = {r.address for r in self.stack.resources}

        for index, config in enumerate(self.stack.resources):
            address = config.address
            if address in resources:
                raise DuplicateResourceError(
                    f"Resource '{address}' is declared more than once",
                    resource_id=address
                )

            references = self._collect_references(address, config.attributes, declared, variables)
            resource_refs = tuple(ref for ref in references if not ref.is_variable)

            for dep in config.depends_on:
                if dep not in declared:
                    raise UnresolvedReferenceError(
                        f"'{address}' depends on '{dep}' which is not declared",
                        resource_id=address
                    )

            attributes = substitute(
                config.attributes,
                lambda ref: variables[ref.target] if ref.is_variable else f"${{{ref.expression}}}"
            )

            resources[address] = Resource(
                address=address,
                type=config.type,
                name=config.name,
                attributes=attributes,
                index=index,
                references=resource_refs,
                depends_on=tuple(config.depends_on),
            )

        return resources

    def _collect_references(
        self,
        owner: str,
        value: Any,
        declared: set,
        variables: Dict[str, Any]
    ) -> List[Reference]:
        try:
            references = list(find_references(value))
        except ValueError as e:
            raise UnresolvedReferenceError(str(e), resource_id=owner, cause=e)

        for ref in references:
            if ref.is_variable and ref.target not in variables:
                raise UnresolvedReferenceError(
                    f"'{owner}' refers to undeclared variable '{ref.target}'",
                    resource_id=owner
                )
            if not ref.is_variable and ref.target not in declared:
                raise UnresolvedReferenceError(
                    f"'{owner}' refers to undeclared resource '{ref.target}'",
                    resource_id=owner
                )
        return references

    def _build_outputs(self, variables: Dict[str, Any], resources: Dict[str, Resource]) -> Dict[str, Output]:
        outputs = {}
        declared = set(resources)
        for name, config in self.stack.outputs.items():
            self._collect_references(f"output.{name}", config.value, declared, variables)
            value = substitute(
                config.value,
                lambda ref: variables[ref.target] if ref.is_variable else f"${{{ref.expression}}}"
            )
            outputs[name] = Output(
                name=name,
                value=value,
                description=config.description,
                sensitive=config.sensitive,
            )
        return outputs
