"""cathooks logging configuration.

cathooks uses the shared InstruktAI logging standard (`instrukt_ai_logging`).
Hook and CLI processes are short-lived; stdout is reserved for their JSON
result, so all log output goes through the configured handlers.
Example log query: `instruktai-python-logs cathooks --since 10m`.
"""

from __future__ import annotations

import os
from typing import Optional

from instrukt_ai_logging import configure_logging


def setup_logging(level: Optional[str] = None) -> None:
    """Configure cathooks logging.

    Args:
        level: Optional override for `CATHOOKS_LOG_LEVEL`.
    """
    if level:
        os.environ["CATHOOKS_LOG_LEVEL"] = level

    configure_logging("cathooks")
