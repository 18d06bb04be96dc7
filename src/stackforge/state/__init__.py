"""State management module for tracking provisioned resources."""

from .manager import StateManager
from .models import STATE_VERSION, RemoteState, ResourceState

__all__ = [
    "STATE_VERSION",
    "RemoteState",
    "ResourceState",
    "StateManager",
]
