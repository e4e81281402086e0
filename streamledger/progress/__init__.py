from streamledger.progress.channel import (
    InMemoryProgressChannel,
    NullProgressChannel,
    ProgressChannel,
    ProgressPublisher,
)
from streamledger.progress.register import ProgressRegister, ProgressSlotBusyError
from streamledger.progress.tracker import ProgressTracker
from streamledger.progress.types import (
    PROGRESS_EVENT,
    JobResult,
    ProgressSnapshot,
    ProgressStatus,
    WaitingFor,
)

__all__ = [
    "PROGRESS_EVENT",
    "InMemoryProgressChannel",
    "JobResult",
    "NullProgressChannel",
    "ProgressChannel",
    "ProgressPublisher",
    "ProgressRegister",
    "ProgressSlotBusyError",
    "ProgressSnapshot",
    "ProgressStatus",
    "ProgressTracker",
    "WaitingFor",
]
