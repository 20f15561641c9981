"""Domain exceptions.

Policy decisions and git outcomes are returned as values; these exceptions are
reserved for caller misuse that has no sensible result shape.
"""


class CatError(Exception):
    """Base error for invalid input to cathooks operations."""


class InvalidIssueIdError(CatError, ValueError):
    pass


class InvalidSessionIdError(CatError, ValueError):
    pass


class NotACatProjectError(CatError):
    def __init__(self, project_dir: str) -> None:
        super().__init__(f"Not a CAT project: '{project_dir}' (no .claude/cat directory)")
        self.project_dir = project_dir


class IssueStateError(CatError):
    """A STATE.md file holds a value outside the accepted vocabulary."""
