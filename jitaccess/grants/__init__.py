"""Grant Orchestrator: persisted request lifecycle from submission to revocation."""

from .domain import AccessRequest, Execution, Grant, GrantState
from .orchestrator import GrantOrchestrator
from .store import InMemoryExecutionStore

__all__ = ["AccessRequest", "Execution", "Grant", "GrantOrchestrator", "GrantState", "InMemoryExecutionStore"]
