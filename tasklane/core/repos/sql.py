"""SQL constants for TasksRepo."""

from __future__ import annotations

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB

from tasklane.core.types.status import TERMINAL_WRITE_FROM_STATES

TASK_COLUMNS = 'id, data, created_at, updated_at'

# Statuses a batched terminal write may overwrite.
BULK_UPDATE_WRITABLE_VALUES: list[str] = sorted(s.value for s in TERMINAL_WRITE_FROM_STATES)

SELECT_BY_STATUS_SQL = text(f"""
    SELECT {TASK_COLUMNS}
    FROM tasks
    WHERE data->>'status' = :status
    ORDER BY created_at DESC, id DESC
    LIMIT :limit
""")

SELECT_BY_TASK_NAME_SQL = text(f"""
    SELECT {TASK_COLUMNS}
    FROM tasks
    WHERE data->>'taskName' = :task_name
    ORDER BY created_at DESC, id DESC
    LIMIT :limit
""")

SELECT_BY_USER_ID_SQL = text(f"""
    SELECT {TASK_COLUMNS}
    FROM tasks
    WHERE data->>'userId' = :user_id
    ORDER BY created_at DESC, id DESC
    LIMIT :limit
""")

# ---------- Bulk update ----------
# One round trip for N rows with distinct patches: ids[i] gets data[i] merged in.
# Rows already completed/cancelled are left untouched.

BULK_UPDATE_SQL = text("""
    UPDATE tasks AS t
    SET data = t.data || u.data_update::jsonb,
        updated_at = NOW()
    FROM UNNEST(CAST(:ids AS text[]), CAST(:data AS text[])) AS u(id, data_update)
    WHERE t.id = u.id
      AND t.data->>'status' = ANY(CAST(:writable AS text[]))
    RETURNING t.id
""")

# ---------- Guarded single-row transition ----------

TRANSITION_SQL = text(f"""
    UPDATE tasks
    SET data = data || :patch,
        updated_at = NOW()
    WHERE id = :id
      AND data->>'status' = ANY(CAST(:from_statuses AS text[]))
    RETURNING {TASK_COLUMNS}
""").bindparams(bindparam('patch', type_=JSONB))
