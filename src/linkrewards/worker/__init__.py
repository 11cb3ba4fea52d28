"""
linkrewards/worker/

Scheduler loop, its persistent state, and epoch replay.
"""

from .state import SchedulerState
from .scheduler import Scheduler, RunStage, RunResult
from .replay import ReplayResult, replay_epoch

__all__ = [
    "SchedulerState",
    "Scheduler",
    "RunStage",
    "RunResult",
    "ReplayResult",
    "replay_epoch",
]
