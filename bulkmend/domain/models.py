from dataclasses import dataclass, field
from typing import Optional, Union
from uuid import UUID

from bulkmend.domain.states import JobStatus

@dataclass(frozen=True)
class FieldSpec:
    """Target field written on every matched record."""
    namespace: str
    key: str
    type: str
    value: str

@dataclass(frozen=True)
class JobSpec:
    query_string: str
    namespace: str
    key: str
    type: str
    value: str
    dry_run: bool = True
    max_items: int = 10_000

    @property
    def field_spec(self) -> FieldSpec:
        return FieldSpec(self.namespace, self.key, self.type, self.value)

@dataclass(frozen=True)
class Admission:
    job_id: UUID
    deduped: bool
    status: JobStatus

# Processing outcomes consumed by the queue's retry policy

@dataclass(frozen=True)
class Done:
    status: JobStatus

@dataclass(frozen=True)
class LockBusy:
    holder: Optional[str] = None

@dataclass(frozen=True)
class Failed:
    reason: str
    retryable: bool = False

Outcome = Union[Done, LockBusy, Failed]

# Remote bulk operations

@dataclass(frozen=True)
class BulkOperationSnapshot:
    id: str
    status: str
    error_code: Optional[str] = None
    object_count: Optional[int] = None
    url: Optional[str] = None

@dataclass
class StreamCounts:
    success_count: int = 0
    failed_count: int = 0
    parse_errors: int = 0
    error_preview: Optional[str] = None

@dataclass
class MutationResult:
    updated_count: int = 0
    failed_count: int = 0
    error_preview: Optional[str] = None
    bulk_operation_id: Optional[str] = None
    operation_ids: list[str] = field(default_factory=list)
