"""Reference expressions embedded in attribute values.

Two forms are recognised inside strings:

* ``${var.<name>}`` - an input variable
* ``${<type>.<name>.<attribute>[.<key>...]}`` - an attribute of another resource

A string that is exactly one expression takes the referenced value with its
type intact; an expression embedded in longer text is interpolated as text.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Tuple


EXPRESSION_PATTERN = re.compile(r"\$\{\s*([^{}\s]+)\s*\}")


class _Unknown:
    """Placeholder for a value the provider assigns during apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __str__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed ``${...}`` expression."""

    expression: str
    kind: str  # 'var' or 'resource'
    target: str  # variable name or resource address
    attribute: Optional[str] = None
    path: Tuple[str, ...] = ()

    @property
    def is_variable(self) -> bool:
        return self.kind == "var"


def parse_reference(expression: str) -> Reference:
    """Parse the inside of a ``${...}`` expression.

    Raises:
        ValueError: If the expression has neither supported shape
    """
    parts = expression.split(".")
    if any(not part for part in parts):
        raise ValueError(f"Malformed reference '${{{expression}}}'")

    if parts[0] == "var":
        if len(parts) != 2:
            raise ValueError(f"Variable reference must be 'var.<name>': '${{{expression}}}'")
        return Reference(expression=expression, kind="var", target=parts[1])

    if len(parts) < 3:
        raise ValueError(
            f"Resource reference must be '<type>.<name>.<attribute>': '${{{expression}}}'"
        )
    return Reference(
        expression=expression,
        kind="resource",
        target=f"{parts[0]}.{parts[1]}",
        attribute=parts[2],
        path=tuple(parts[3:]),
    )


def find_references(value: Any) -> Iterator[Reference]:
    """Yield every reference in a nested attribute value, in document order.

    Raises:
        ValueError: On a malformed expression
    """
    if isinstance(value, str):
        for match in EXPRESSION_PATTERN.finditer(value):
            yield parse_reference(match.group(1))
    elif isinstance(value, dict):
        for item in value.values():
            yield from find_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from find_references(item)


def substitute(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of ``value`` with every expression replaced.

    ``resolve`` may return ``UNKNOWN``; an embedded unknown makes the whole
    string unknown.
    """
    if isinstance(value, str):
        match = EXPRESSION_PATTERN.fullmatch(value)
        if match:
            return resolve(parse_reference(match.group(1)))

        unknown = False

        def replace(m: "re.Match") -> str:
            nonlocal unknown
            resolved = resolve(parse_reference(m.group(1)))
            if resolved is UNKNOWN:
                unknown = True
                return ""
            return _to_text(resolved)

        text = EXPRESSION_PATTERN.sub(replace, value)
        return UNKNOWN if unknown else text
    if isinstance(value, dict):
        return {key: substitute(item, resolve) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, resolve) for item in value]
    if isinstance(value, tuple):
        return [substitute(item, resolve) for item in value]
    return value


def walk_path(value: Any, path: Tuple[str, ...]) -> Any:
    """Follow dict keys / list indices below a referenced attribute.

    Raises:
        KeyError: If a step does not exist
    """
    for step in path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, list):
            try:
                value = value[int(step)]
            except (ValueError, IndexError):
                raise KeyError(step)
        elif isinstance(value, dict):
            value = value[step]
        else:
            raise KeyError(step)
    return value


def contains_unknown(value: Any) -> bool:
    """True if ``value`` holds ``UNKNOWN`` anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
