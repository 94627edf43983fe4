from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class StepType(str, Enum):
    ANALYSIS = "analysis"
    GENERATION = "generation"
    VALIDATION = "validation"
    OPTIMIZATION = "optimization"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STEP_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


_STEP_RANK = {
    StepStatus.PENDING: 0,
    StepStatus.RUNNING: 1,
    StepStatus.COMPLETED: 2,
    StepStatus.FAILED: 2,
}


class PlanStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PlanStatus.COMPLETED, PlanStatus.FAILED)


class Step(BaseModel):
    id: int
    name: str
    description: str = ""
    # 步骤类型由模型生成，未登记的取值按原样保留为字符串
    type: Union[StepType, str] = Field(StepType.ANALYSIS, union_mode="left_to_right")
    dependencies: list[int] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    result: Optional[Any] = None
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def can_transition(self, target: StepStatus) -> bool:
        """状态只能向前：pending → running → completed | failed"""
        return not self.status.is_terminal and target.rank > self.status.rank

    def advance(self, target: StepStatus) -> bool:
        if not self.can_transition(target):
            return False
        self.status = target
        return True


class ExecutionPlan(BaseModel):
    id: str
    description: str = ""
    steps: list[Step] = Field(default_factory=list)
    total_steps: int = Field(0, alias="totalSteps")
    current_step: int = Field(0, alias="currentStep")
    status: PlanStatus = PlanStatus.PLANNING
    created_at: Optional[int] = Field(None, alias="createdAt")
    completed_at: Optional[int] = Field(None, alias="completedAt")

    model_config = ConfigDict(populate_by_name=True)

    def find_step(self, step_id: int) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    @property
    def all_steps_terminal(self) -> bool:
        return all(s.status.is_terminal for s in self.steps)

    def merge_from(self, previous: Optional["ExecutionPlan"]) -> "ExecutionPlan":
        """
        用新到达的计划替换旧计划时，保证已推进的步骤状态不会倒退。

        Args:
            previous: 当前持有的计划

        Returns:
            合并后的自身
        """
        if previous is None or previous.id != self.id:
            return self
        for step in self.steps:
            held = previous.find_step(step.id)
            if held is None or held.status.rank <= step.status.rank:
                continue
            step.status = held.status
            if step.result is None:
                step.result = held.result
            if step.error is None:
                step.error = held.error
        if previous.status.is_terminal and not self.status.is_terminal:
            self.status = previous.status
        return self

    def mark_failed(self) -> None:
        if not self.status.is_terminal:
            self.status = PlanStatus.FAILED


class OrchestratorResult(BaseModel):
    plan: ExecutionPlan
    final_result: Optional[Any] = Field(None, alias="finalResult")
    summary: str = ""
    execution_time: float = Field(0, alias="executionTime")

    model_config = ConfigDict(populate_by_name=True)
