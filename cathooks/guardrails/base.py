"""Guardrail result and context types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from cathooks.config.schema import TrustLevel


@dataclass(frozen=True)
class GuardResult:
    """A guardrail decision. Blocks carry a multi-line, human-readable reason."""

    blocked: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> GuardResult:
        return cls(False, "")

    @classmethod
    def block(cls, reason: str) -> GuardResult:
        return cls(True, reason)

    def to_dict(self) -> dict[str, object]:
        return {"blocked": self.blocked, "reason": self.reason}


@dataclass(frozen=True)
class GuardContext:
    """Everything a check may consult besides the proposed action itself.

    Config values (trust) are passed in explicitly; checks never load config.
    """

    working_directory: str
    session_id: str = ""
    project_dir: str = ""
    trust: TrustLevel = TrustLevel.MEDIUM
    transcript_path: Path | None = None
    clock: Callable[[], float] = field(default=time.time, compare=False)

    @property
    def project_root(self) -> Path:
        return Path(self.project_dir or self.working_directory).absolute()
