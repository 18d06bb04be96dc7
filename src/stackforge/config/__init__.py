"""Configuration management for stackforge."""

from .models import (
    EngineSettings,
    OutputConfig,
    ProviderConfig,
    ResourceConfig,
    StackConfig,
    VariableConfig,
)
from .parser import Config, load_var_file, parse_var_assignments

__all__ = [
    "EngineSettings",
    "OutputConfig",
    "ProviderConfig",
    "ResourceConfig",
    "StackConfig",
    "VariableConfig",
    "Config",
    "load_var_file",
    "parse_var_assignments",
]
