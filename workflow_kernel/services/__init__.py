"""
Kernel services layer.

The ``Workflow`` state machine base and the in-process event bus it
owns.  Everything here is in-memory and single-process.
"""

from workflow_kernel.services.events import EventBus
from workflow_kernel.services.workflow import Workflow

__all__ = ["EventBus", "Workflow"]
