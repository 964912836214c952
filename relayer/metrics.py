from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_submitted_total = Counter("relayer_jobs_submitted_total", "Jobs accepted via the HTTP API", ["type"])
jobs_enqueued_total = Counter("relayer_jobs_enqueued_total", "Jobs admitted into a queue", ["queue"])
error_count = Counter("relayer_error_count", "Total errors encountered by the relayer", ["source"])
enqueue_latency_seconds = Histogram("relayer_enqueue_latency_seconds", "Time to enqueue a job")
request_latency_seconds = Histogram("relayer_request_latency_seconds", "HTTP request latency seconds")

# Worker / execution metrics
jobs_executed_total = Counter("relayer_jobs_executed_total", "Jobs completed by the worker", ["queue", "type"])
jobs_failed_total = Counter("relayer_jobs_failed_total", "Failed job attempts", ["queue", "type"])
jobs_handed_off_total = Counter("relayer_jobs_handed_off_total", "Main-queue jobs moved to the retry queue", ["type"])
jobs_stalled_total = Counter("relayer_jobs_stalled_total", "Jobs recovered after a lost lease", ["queue"])
retry_exhausted_total = Counter("relayer_retry_exhausted_total", "Jobs that failed every retry attempt", ["type"])
execution_latency_seconds = Histogram("relayer_execution_latency_seconds", "Job execution latency seconds", ["type"])
queue_jobs = Gauge("relayer_queue_jobs", "Jobs per queue and state at the last status read", ["queue", "state"])


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
