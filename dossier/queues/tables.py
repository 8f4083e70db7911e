QUEUED_JOBS_TABLE_SCHEMA = """
create table if not exists queued_jobs (
    job_id                    text primary key,
    queue                     text not null,
    name                      text not null,
    payload                   text,
    state                     text not null,
    priority                  integer not null default 0,
    attempts_made             integer not null default 0,
    max_attempts              integer not null,
    backoff_seconds           real not null,
    run_after                 text not null,
    claimed_by                text,
    claimed_at                text,
    last_error                text,
    error_blob                text,
    created_at                text not null,
    updated_at                text not null
);
"""

QUEUED_JOBS_CLAIM_INDEX = """
create index if not exists idx_queued_jobs_claim on queued_jobs(queue, state, priority asc, run_after asc, created_at asc);
"""

QUEUE_SCHEMA = [QUEUED_JOBS_TABLE_SCHEMA, QUEUED_JOBS_CLAIM_INDEX]
