"""
Workflow Runtime

A persistable workflow orchestration engine: typed activity graphs,
suspend/resume on human tasks, timers and signals, gateway branching and
joins, sub-processes, retries and fault recovery.
"""

import logging
from typing import Optional

__version__ = "1.0.0"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for applications embedding the runtime.
    
    Falls back to the configured ``log_level`` setting when no level is given.
    """
    from workflow_runtime.config import get_settings
    
    level = level or get_settings().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
