"""Task tracking module for helm-sync.

Reconciliations triggered by store events and the periodic sweeps run as
asyncio tasks owned by a `TaskService`, so callers can wait for pending
reconciliations or shut the background loops down.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
