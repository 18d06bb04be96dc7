"""State file data models."""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


STATE_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceState(BaseModel):
    """Last-known record of one provisioned resource."""

    address: str = Field(..., description="Resource identity, '<type>.<name>'")
    type: str = Field(..., description="Resource type (e.g., aws_elb)")
    name: str = Field(..., description="Resource name within its type")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved attributes submitted to the provider"
    )
    computed: Dict[str, Any] = Field(
        default_factory=dict, description="Provider-assigned attributes (id, dns_name, ...)"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Addresses this resource depended on when applied"
    )
    index: int = Field(0, description="Declaration order when last applied")
    updated_at: datetime = Field(default_factory=_utcnow)

    def lookup(self, attribute: str) -> Any:
        """Return an attribute value, preferring provider-assigned values.

        Raises:
            KeyError: If neither mapping holds the attribute
        """
        if attribute in self.computed:
            return self.computed[attribute]
        return self.attributes[attribute]

    def has_attribute(self, attribute: str) -> bool:
        return attribute in self.computed or attribute in self.attributes


class RemoteState(BaseModel):
    """Complete persisted state document."""

    version: int = Field(STATE_VERSION, description="State file schema version")
    serial: int = Field(0, description="Incremented on every write")
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
    resources: Dict[str, ResourceState] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    def get_resource(self, address: str) -> Optional[ResourceState]:
        """Get a resource record by address."""
        return self.resources.get(address)

    def has_resource(self, address: str) -> bool:
        return address in self.resources

    def ordered_resources(self) -> List[ResourceState]:
        """Records sorted by their recorded declaration order."""
        return sorted(self.resources.values(), key=lambda r: (r.index, r.address))

    def get_dependents(self, address: str) -> List[str]:
        """Get recorded resources that depend on the given resource."""
        return [
            record.address for record in self.ordered_resources()
            if address in record.dependencies
        ]

    def copy_deep(self) -> "RemoteState":
        return RemoteState.model_validate(copy.deepcopy(self.model_dump()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteState":
        """Create state from a decoded JSON document."""
        return cls.model_validate(data)
