"""Provisioner interface and the provider registry built on top of it."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from stackforge.utils.errors import (
    EngineError,
    ErrorContext,
    ValidationError,
    error_handler,
)
from stackforge.utils.logging import get_logger

logger = get_logger(__name__)


class ChangeType(Enum):
    """Type of change for a resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_CHANGE = "no_change"


@dataclass(frozen=True)
class ResourceSchema:
    """What the planner needs to know about a resource type.

    Attributes:
        type: Resource type name
        immutable: Attributes whose change forces replacement
        unique: Attribute groups whose combined values must be unique
            among resources of this type (e.g. ``("vpc_id", "name")``)
        computed: Attributes the provider assigns
        required: Attributes that must be present
        volatile: Computed attributes an in-place update may change
    """

    type: str
    immutable: FrozenSet[str] = frozenset()
    unique: Tuple[Tuple[str, ...], ...] = ()
    computed: FrozenSet[str] = frozenset()
    required: FrozenSet[str] = frozenset()
    volatile: FrozenSet[str] = frozenset()

    def forces_replacement(self, attribute: str) -> bool:
        return attribute in self.immutable


class BaseProvisioner(ABC):
    """Base class for all resource provisioners.

    A provisioner manages exactly one resource type. Each operation takes
    attribute mappings and returns the provider-assigned (computed)
    attributes.
    """

    schema: ResourceSchema

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create the resource.

        Args:
            attributes: Fully resolved desired attributes

        Returns:
            Provider-assigned attributes (must include ``id``)
        """

    @abstractmethod
    def read(self, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Fetch current provider-assigned attributes.

        Returns:
            Current computed attributes, or None if the resource no longer exists
        """

    @abstractmethod
    def update(
        self,
        computed: Dict[str, Any],
        attributes: Dict[str, Any],
        previous: Dict[str, Any],
        changed: List[str]
    ) -> Dict[str, Any]:
        """Apply in-place changes.

        Args:
            computed: Provider-assigned attributes of the existing resource
            attributes: New desired attributes
            previous: Attributes last submitted
            changed: Top-level attribute names that differ

        Returns:
            Provider-assigned attributes after the update
        """

    @abstractmethod
    def delete(self, computed: Dict[str, Any]) -> None:
        """Destroy the resource; deleting a resource that is already gone succeeds."""


class Provider:
    """Dispatches resource operations to the provisioner for each type.

    Exceptions escaping a provisioner are converted into ``ProviderError``
    (transient or permanent) by the shared error handler.
    """

    name = "provider"

    def __init__(self, provisioners: Dict[str, BaseProvisioner]):
        """Initialize provider.

        Args:
            provisioners: Provisioner for each supported resource type
        """
        self.provisioners = dict(provisioners)
        self.logger = get_logger(__name__)

    @property
    def schemas(self) -> Dict[str, ResourceSchema]:
        return {type_name: p.schema for type_name, p in self.provisioners.items()}

    def supports(self, resource_type: str) -> bool:
        return resource_type in self.provisioners

    def provisioner_for(self, resource_type: str) -> BaseProvisioner:
        """
        Raises:
            ValidationError: If the type is not supported
        """
        provisioner = self.provisioners.get(resource_type)
        if provisioner is None:
            raise ValidationError(
                f"Unsupported resource type '{resource_type}'",
                context=ErrorContext(resource_type=resource_type),
                suggestions=[f"Supported types: {', '.join(sorted(self.provisioners))}"]
            )
        return provisioner

    def configure(self) -> None:
        """Check that the provider can be used (credentials, endpoints)."""

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(resource_type, "create", attributes)

    def read(self, resource_type: str, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._call(resource_type, "read", computed)

    def update(
        self,
        resource_type: str,
        computed: Dict[str, Any],
        attributes: Dict[str, Any],
        previous: Dict[str, Any],
        changed: List[str]
    ) -> Dict[str, Any]:
        return self._call(resource_type, "update", computed, attributes, previous, changed)

    def delete(self, resource_type: str, computed: Dict[str, Any]) -> None:
        self._call(resource_type, "delete", computed)

    def _call(self, resource_type: str, operation: str, *args):
        provisioner = self.provisioner_for(resource_type)
        try:
            return getattr(provisioner, operation)(*args)
        except EngineError:
            raise
        except Exception as e:
            raise error_handler.handle_exception(
                e,
                ErrorContext(resource_type=resource_type, operation=operation)
            ) from e


class AwsProvisioner(BaseProvisioner):
    """Shared plumbing for provisioners backed by boto3 clients."""

    service: str = ""

    def __init__(self, clients):
        """Initialize provisioner.

        Args:
            clients: AWSClientManager handing out cached boto3 clients
        """
        self.clients = clients
        self.logger = get_logger(type(self).__module__)

    @property
    def client(self):
        return self.clients.get_client(self.service)

    @staticmethod
    def tag_list(tags: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Convert a tag mapping to the ``[{'Key': ..., 'Value': ...}]`` form."""
        return [{'Key': str(k), 'Value': str(v)} for k, v in (tags or {}).items()]

    @staticmethod
    def error_code(error: Exception) -> str:
        response = getattr(error, 'response', None) or {}
        return response.get('Error', {}).get('Code', '')
