"""Pydantic models for configuration schema."""

import re
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")

VariableType = Literal["string", "number", "bool", "list", "map", "any"]


class ProviderConfig(BaseModel):
    """Provider configuration."""

    name: Literal["aws"] = "aws"
    region: str = Field(..., min_length=1, description="Region every resource is created in")
    profile: Optional[str] = Field(None, description="Named credentials profile")

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not REGION_PATTERN.match(v):
            raise ValueError(f"Invalid AWS region: {v}")
        return v


class EngineSettings(BaseModel):
    """Execution tuning knobs."""

    parallelism: int = Field(10, ge=1, le=64, description="Maximum concurrent provider actions")
    max_retries: int = Field(5, ge=0, le=20, description="Retries for transient provider errors")
    retry_base_delay: float = Field(1.0, gt=0, description="First backoff delay in seconds")
    retry_max_delay: float = Field(30.0, gt=0, description="Upper bound for a single backoff")
    state_path: str = Field(".stackforge/state.json", min_length=1)
    lock_timeout: int = Field(30, ge=0, description="Seconds to wait for the state lock")


class VariableConfig(BaseModel):
    """An input variable."""

    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    type: VariableType = "any"
    description: Optional[str] = None
    default: Any = None

    @property
    def has_default(self) -> bool:
        # ``default: null`` counts as a default; an absent key does not
        return "default" in self.model_fields_set


class ResourceConfig(BaseModel):
    """A declared resource."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$")
    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_-]*$")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class OutputConfig(BaseModel):
    """A named output expression."""

    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_-]*$")
    value: Any
    description: Optional[str] = None
    sensitive: bool = False


class StackConfig(BaseModel):
    """The whole configuration document."""

    provider: ProviderConfig
    engine: EngineSettings = Field(default_factory=EngineSettings)
    variables: Dict[str, VariableConfig] = Field(default_factory=dict)
    resources: List[ResourceConfig] = Field(default_factory=list)
    outputs: Dict[str, OutputConfig] = Field(default_factory=dict)
