from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()          # Admitted, waiting for a worker and the tenant lock
    RUNNING = auto()          # Worker holds the tenant lock and drives the stages
    COMPLETED = auto()        # Terminal: stages finished (item-level failures allowed)
    FAILED = auto()           # Terminal: hard failure

OPEN_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

class JobEvent(StrEnum):
    CREATED = auto()
    STARTED = auto()
    LOCK_WAITING = auto()
    LOCK_ACQUIRED = auto()
    QUERY_STARTED = auto()
    QUERY_COMPLETED = auto()
    MUTATION_STARTED = auto()
    MUTATION_COMPLETED = auto()
    COMPLETED = auto()
    FAILED = auto()
    LOCK_RELEASED = auto()

class QueueStatus(StrEnum):
    WAITING = auto()          # Eligible for lease once available_at passes
    ACTIVE = auto()           # Leased by a worker
    DONE = auto()             # Handled; job reached a terminal state
    PARKED = auto()           # Retry budget exhausted, kept for inspection
