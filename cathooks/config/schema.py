from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TrustLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VerifyLevel(str, Enum):
    NONE = "none"
    CHANGED = "changed"
    ALL = "all"


class EffortLevel(str, Enum):
    """Shared low/medium/high scale used by curiosity and patience."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CompletionWorkflow(str, Enum):
    MERGE = "merge"
    PR = "pr"


class CatConfig(BaseModel):
    """Project configuration stored in `.claude/cat/cat-config.json`."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    trust: TrustLevel = TrustLevel.MEDIUM
    verify: VerifyLevel = VerifyLevel.CHANGED
    curiosity: EffortLevel = EffortLevel.LOW
    patience: EffortLevel = EffortLevel.HIGH
    auto_remove_worktrees: bool = Field(default=True, alias="autoRemoveWorktrees")
    completion_workflow: CompletionWorkflow = Field(default=CompletionWorkflow.MERGE, alias="completionWorkflow")
    terminal_width: int = Field(default=120, ge=40, alias="terminalWidth")

    @field_validator("trust", "verify", "curiosity", "patience", "completion_workflow", mode="before")
    @classmethod
    def normalize_case(cls, v: Any) -> Any:
        """Accept enum values regardless of case or surrounding whitespace."""
        if isinstance(v, str):
            return v.strip().lower()
        return v
