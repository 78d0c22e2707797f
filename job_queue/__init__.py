"""
Job Queue — background job engine for campaign sending, verification and warmup.

Jobs live in the job store (database/); workers claim them atomically,
check per-inbox daily rate windows, dispatch to typed handlers, and
retry failures with bounded exponential backoff:

    producer  ──enqueue──▶  jobs  ◀──claim──  SchedulerLoop × N  (+ StaleJobReaper)

Modules are imported directly (job_queue.scheduler, job_queue.dispatcher, ...)
to keep this package free of import cycles with database/.
"""
