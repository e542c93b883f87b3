"""SQL constants for the PostgreSQL job broker."""

from __future__ import annotations

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB

JOB_COLUMNS = 'id, name, data, state, attempts_made, max_attempts'

# ---------- Producer ----------

INSERT_JOB_SQL = text(f"""
    INSERT INTO tasklane_jobs (
        id, queue_name, name, data, state, priority, attempts_made, max_attempts,
        backoff_type, backoff_ms, timeout_ms, run_at, created_at
    )
    VALUES (
        :id, :queue_name, :name, :data, :state, :priority, 0, :max_attempts,
        :backoff_type, :backoff_ms, :timeout_ms,
        NOW() + (CAST(:delay_ms AS integer) * INTERVAL '1 millisecond'), NOW()
    )
    RETURNING {JOB_COLUMNS}
""").bindparams(bindparam('data', type_=JSONB))

# Delivered on commit, together with the INSERT.
NOTIFY_SQL = text('SELECT pg_notify(:channel, :payload)')

# Active jobs hold a lease and cannot be removed.
REMOVE_JOB_SQL = text("""
    DELETE FROM tasklane_jobs
    WHERE id = :id AND queue_name = :queue AND state <> 'active'
    RETURNING id
""")

GET_JOB_SQL = text(f"""
    SELECT {JOB_COLUMNS}
    FROM tasklane_jobs
    WHERE id = :id AND queue_name = :queue
""")

# Delayed jobs whose run_at has passed are waiting for a worker.
QUEUE_STATS_SQL = text("""
    SELECT
        COUNT(*) FILTER (
            WHERE state = 'waiting' OR (state = 'delayed' AND run_at <= NOW())
        ) AS waiting,
        COUNT(*) FILTER (WHERE state = 'active') AS active,
        COUNT(*) FILTER (WHERE state = 'completed') AS completed,
        COUNT(*) FILTER (WHERE state = 'failed') AS failed,
        COUNT(*) FILTER (WHERE state = 'delayed' AND run_at > NOW()) AS delayed
    FROM tasklane_jobs
    WHERE queue_name = :queue
""")

# ---------- Consumer ----------
# Claimed jobs receive a lease via lock_expires_at.
# An active job whose lease expired is stalled and reclaimable by any worker.
# Reclaiming counts the lost delivery as a finished attempt.

CLAIM_JOBS_SQL = text("""
WITH next AS (
  SELECT id, (state = 'active') AS stalled
  FROM tasklane_jobs
  WHERE queue_name = :queue
    AND (
      (state IN ('waiting', 'delayed') AND run_at <= NOW())
      OR (state = 'active' AND lock_expires_at IS NOT NULL AND lock_expires_at < NOW())
    )
  ORDER BY priority ASC, run_at ASC, id ASC
  FOR UPDATE SKIP LOCKED
  LIMIT :lim
)
UPDATE tasklane_jobs j
SET state = 'active',
    attempts_made = CASE WHEN next.stalled THEN j.attempts_made + 1 ELSE j.attempts_made END,
    lock_token = :token,
    lock_expires_at = NOW() + (CAST(:lock_ms AS integer) * INTERVAL '1 millisecond'),
    processed_at = NOW()
FROM next
WHERE j.id = next.id
RETURNING j.id, j.name, j.data, j.attempts_made, j.max_attempts,
          j.backoff_type, j.backoff_ms, j.timeout_ms, j.lock_token, j.processed_at,
          next.stalled
""")

EXTEND_LOCK_SQL = text("""
    UPDATE tasklane_jobs
    SET lock_expires_at = NOW() + (CAST(:lock_ms AS integer) * INTERVAL '1 millisecond')
    WHERE id = :id AND lock_token = :token AND state = 'active'
    RETURNING id
""")

COMPLETE_JOB_SQL = text("""
    UPDATE tasklane_jobs
    SET state = 'completed',
        result = :result,
        attempts_made = attempts_made + 1,
        lock_token = NULL,
        lock_expires_at = NULL,
        finished_at = NOW()
    WHERE id = :id AND lock_token = :token AND state = 'active'
    RETURNING id
""").bindparams(bindparam('result', type_=JSONB))

RETRY_JOB_SQL = text("""
    UPDATE tasklane_jobs
    SET state = 'delayed',
        attempts_made = attempts_made + 1,
        run_at = NOW() + (CAST(:delay_ms AS integer) * INTERVAL '1 millisecond'),
        failed_reason = :reason,
        lock_token = NULL,
        lock_expires_at = NULL
    WHERE id = :id AND lock_token = :token AND state = 'active'
    RETURNING id
""")

FAIL_JOB_SQL = text("""
    UPDATE tasklane_jobs
    SET state = 'failed',
        attempts_made = attempts_made + 1,
        failed_reason = :reason,
        lock_token = NULL,
        lock_expires_at = NULL,
        finished_at = NOW()
    WHERE id = :id AND lock_token = :token AND state = 'active'
    RETURNING id
""")

# A reclaimed job with no attempts left; the claim already counted the lost one.
FAIL_STALLED_JOB_SQL = text("""
    UPDATE tasklane_jobs
    SET state = 'failed',
        failed_reason = :reason,
        lock_token = NULL,
        lock_expires_at = NULL,
        finished_at = NOW()
    WHERE id = :id AND lock_token = :token AND state = 'active'
    RETURNING id
""")

# Keep only the newest :keep finished jobs of one state per queue.
TRIM_FINISHED_SQL = text("""
    DELETE FROM tasklane_jobs
    WHERE id IN (
        SELECT id FROM tasklane_jobs
        WHERE queue_name = :queue AND state = :state
        ORDER BY finished_at DESC NULLS LAST, id DESC
        OFFSET :keep
    )
""")
