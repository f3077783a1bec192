"""
Execution plan and run summary models.
"""

from enum import Enum
from typing import Optional, Dict, List
from pydantic import BaseModel, Field

from .tool import ToolConfig


class NodeState(str, Enum):
    """Lifecycle of a plan node during one run."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    INSTALLED = "installed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeState.INSTALLED, NodeState.FAILED, NodeState.SKIPPED)


class PlanNode(BaseModel):
    """A tool scheduled in a plan, with its in-plan dependencies."""
    tool: ToolConfig
    dependencies: List[str] = Field(default_factory=list, description="Dependency ids inside the plan")
    state: NodeState = Field(default=NodeState.PENDING)
    reason: Optional[str] = Field(None, description="Failure output or skip cause")
    skipped_because: Optional[str] = Field(None, description="Dependency that caused a skip")
    layer: int = 0
    order: int = 0
    user_requested: bool = False

    @property
    def tool_id(self) -> str:
        return self.tool.id

    def transition(self, state: NodeState, reason: Optional[str] = None) -> NodeState:
        """Move to a new state and return the previous one."""
        previous = self.state
        self.state = state
        if reason:
            self.reason = reason
        return previous


class ExecutionPlan(BaseModel):
    """Resolved, layered plan for a run."""
    requested: List[str] = Field(default_factory=list, description="Requested ids after bundle expansion")
    layers: List[List[str]] = Field(default_factory=list)
    nodes: Dict[str, PlanNode] = Field(default_factory=dict)
    satisfied: List[str] = Field(default_factory=list, description="Already installed, excluded from the plan")

    @property
    def order(self) -> List[str]:
        return [tool_id for layer in self.layers for tool_id in layer]

    def dependents_of(self, tool_id: str) -> List[str]:
        """Plan nodes that list tool_id as a dependency, in plan order."""
        return [tid for tid in self.order if tool_id in self.nodes[tid].dependencies]

    def __len__(self) -> int:
        return len(self.nodes)


class ToolOutcome(BaseModel):
    """Terminal outcome of one tool in a run."""
    tool_id: str
    state: NodeState
    diagnostic: Optional[str] = None
    skipped_because: Optional[str] = None
    invoked: bool = False
    pre_satisfied: bool = False
    duration_seconds: Optional[float] = None


class RunSummary(BaseModel):
    """Aggregate result of an orchestration run."""
    requested: List[str] = Field(default_factory=list)
    outcomes: Dict[str, ToolOutcome] = Field(default_factory=dict)
    layers: List[List[str]] = Field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    def states(self) -> Dict[str, NodeState]:
        return {tool_id: outcome.state for tool_id, outcome in self.outcomes.items()}

    def count(self, state: NodeState) -> int:
        return sum(1 for o in self.outcomes.values() if o.state == state)

    @property
    def installed(self) -> int:
        return self.count(NodeState.INSTALLED)

    @property
    def failed(self) -> int:
        return self.count(NodeState.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(NodeState.SKIPPED)

    @property
    def invocations(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.invoked)

    @property
    def success(self) -> bool:
        if self.cancelled:
            return False
        if self.dry_run:
            return True
        return all(
            o.state == NodeState.INSTALLED
            for o in self.outcomes.values()
            if not o.pre_satisfied
        )

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 0 if self.success else 1

    def raise_for_status(self) -> None:
        """Raise CancellationError or InstallError if the run did not succeed."""
        from ..core.errors import CancellationError, InstallError

        if self.cancelled:
            raise CancellationError(
                "Installation run cancelled",
                pending=[o.tool_id for o in self.outcomes.values() if o.diagnostic == "cancelled"]
            )
        if not self.success:
            failed = [tid for tid, o in self.outcomes.items() if o.state != NodeState.INSTALLED and not o.pre_satisfied]
            raise InstallError(f"{len(failed)} tool(s) did not install: {', '.join(failed)}", tool_ids=failed)

    def to_dict(self) -> Dict:
        data = self.model_dump(mode="json")
        data.update({
            "installed": self.installed,
            "failed": self.failed,
            "skipped": self.skipped,
            "exit_code": self.exit_code
        })
        return data
