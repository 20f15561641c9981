"""Project configuration.

Config is loaded explicitly by entry points and passed down; guardrail checks
never read it from ambient state:
    from cathooks.config import load_project_config
"""

from cathooks.config.loader import load_config, load_project_config
from cathooks.config.schema import CatConfig, CompletionWorkflow, EffortLevel, TrustLevel, VerifyLevel

__all__ = [
    "CatConfig",
    "CompletionWorkflow",
    "EffortLevel",
    "TrustLevel",
    "VerifyLevel",
    "load_config",
    "load_project_config",
]
