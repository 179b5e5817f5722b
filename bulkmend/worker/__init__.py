from .processor import JobProcessor
from .runner import WorkerPool, WorkerRunner

__all__ = [
    "JobProcessor",
    "WorkerPool",
    "WorkerRunner",
]
