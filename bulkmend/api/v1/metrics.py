from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_ADMITTED = Counter('bulkmend_jobs_admitted_total', 'Trigger admissions', ['deduped']) # deduped=true|false
JOBS_FINISHED = Counter('bulkmend_jobs_finished_total', 'Jobs reaching a terminal state', ['status'])
JOB_DURATION = Histogram(
    'bulkmend_job_duration_seconds',
    'Time from RUNNING to a terminal state',
    buckets=[10.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0, 14400.0]
)

QUEUE_DEPTH = Gauge('bulkmend_queue_depth', 'Queue entries waiting for a worker')
QUEUE_RETRIES = Counter('bulkmend_queue_retries_total', 'Queue entries rescheduled', ['reason']) # lock_busy|failure|lease_expired
QUEUE_PARKED = Counter('bulkmend_queue_entries_parked_total', 'Queue entries parked after exhausting attempts')

LOCK_CONTENTION = Counter('bulkmend_lock_contention_total', 'Tenant lock acquisitions denied')
LOCK_STORE_ERRORS = Counter('bulkmend_lock_store_errors_total', 'Lock store failures', ['operation'])

REMOTE_RETRIES = Counter('bulkmend_remote_retries_total', 'Remote API calls retried', ['reason']) # rate_limited|server_error|transport

LEADER_STATUS = Gauge(
    "bulkmend_reaper_leader_status",
    "Whether this instance ran the reaper on its last tick (1) or not (0)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
