"""Project lifecycle: guarded transitions, bids and privileged overrides."""

from .engine import LifecycleEngine
from .overrides import OverrideOperations

__all__ = ["LifecycleEngine", "OverrideOperations"]
