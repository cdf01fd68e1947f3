"""Control-protocol runtime: request correlation, callback dispatch, shutdown."""

from .engine import ControlEngine, EngineState
from .pending import PendingRequests

__all__ = ["ControlEngine", "EngineState", "PendingRequests"]
