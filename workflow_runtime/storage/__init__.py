"""Storage layer: persistence contracts and their implementations."""

from workflow_runtime.storage.base import (
    DefinitionStore,
    InstanceStore,
    LockProvider,
    TimerStore,
)
from workflow_runtime.storage.memory import (
    InMemoryDefinitionStore,
    InMemoryInstanceStore,
    InMemoryLockProvider,
    InMemoryTimerStore,
)

__all__ = [
    "DefinitionStore",
    "InMemoryDefinitionStore",
    "InMemoryInstanceStore",
    "InMemoryLockProvider",
    "InMemoryTimerStore",
    "InstanceStore",
    "LockProvider",
    "TimerStore",
]
