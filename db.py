"""SQLite persistence for Prompt Studio (aiosqlite, WAL mode).

Tables, indexes and triggers are created by init_db() at startup.

Ownership rules live here: every project/prompt/run function takes the acting
user's id and puts it in the WHERE clause, so another user's row reads as
missing and writes to it affect nothing.
"""

import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

DB_PATH = Path(os.environ.get("DB_PATH") or Path(__file__).parent / "data" / "prompt_studio.db")

# UTC with milliseconds, e.g. 2024-05-01T12:00:00.123Z
_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"


class DatabaseManager:
    """One short-lived connection per operation.

    DB_PATH is looked up on every call, so tests can repoint it.
    """

    @asynccontextmanager
    async def connect(self):
        async with aiosqlite.connect(str(DB_PATH)) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA busy_timeout=5000")
            await conn.execute("PRAGMA foreign_keys=ON")
            yield conn

    async def fetch_one(self, query: str, params: tuple = ()) -> dict | None:
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict]:
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def scalar(self, query: str, params: tuple = ()):
        """First column of the first row, or None."""
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        return row[0] if row else None

    async def write(self, statement: str, params: tuple = ()) -> int:
        """Run one INSERT/UPDATE/DELETE, commit, return the affected row count."""
        async with self.connect() as conn:
            cursor = await conn.execute(statement, params)
            await conn.commit()
            return cursor.rowcount

    async def insert_and_fetch(self, statement: str, params: tuple, table: str, row_id: str) -> dict | None:
        """Insert a row and read it back (defaults and all) on the same connection."""
        async with self.connect() as conn:
            await conn.execute(statement, params)
            await conn.commit()
            cursor = await conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
            row = await cursor.fetchone()
        return dict(row) if row else None


_db = DatabaseManager()


# --- Schema ---

_TABLES = [
    f"""
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        description TEXT NOT NULL,
        applied_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        full_name TEXT,
        role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin','user')),
        created_at TEXT NOT NULL DEFAULT {_NOW},
        updated_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        email TEXT,
        full_name TEXT,
        avatar_url TEXT,
        plan TEXT NOT NULL DEFAULT 'free',
        created_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL DEFAULT {_NOW},
        updated_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS prompts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        project_id TEXT REFERENCES projects(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        model TEXT NOT NULL DEFAULT 'gpt-4',
        temperature REAL DEFAULT 0.7,
        max_tokens INTEGER DEFAULT 1000,
        version INTEGER DEFAULT 1,
        tags TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL DEFAULT {_NOW},
        updated_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        prompt_id TEXT REFERENCES prompts(id) ON DELETE CASCADE,
        model TEXT NOT NULL,
        response TEXT,
        tokens_used INTEGER,
        latency_ms INTEGER,
        cost_usd REAL,
        status TEXT DEFAULT 'pending',
        error_message TEXT,
        created_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_hash TEXT UNIQUE NOT NULL,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_NOW}
    )""",
    f"""
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL DEFAULT {_NOW},
        user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
        username TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        detail TEXT,
        ip_address TEXT,
        user_agent TEXT
    )""",
]

_INDEXES = {
    "idx_refresh_tokens_user": "refresh_tokens(user_id)",
    "idx_projects_user": "projects(user_id, created_at DESC)",
    "idx_prompts_user": "prompts(user_id, created_at DESC)",
    "idx_prompts_project": "prompts(project_id)",
    "idx_runs_user": "runs(user_id, created_at DESC)",
    "idx_runs_prompt": "runs(prompt_id)",
    "idx_audit_timestamp": "audit_log(timestamp)",
}


async def init_db():
    """Create tables, indexes and triggers. Safe to call repeatedly."""
    logger.info("Initializing database at %s", DB_PATH)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    async with _db.connect() as conn:
        await conn.execute("PRAGMA journal_mode=WAL")
        for ddl in _TABLES:
            await conn.execute(ddl)
        for name, target in _INDEXES.items():
            await conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {target}")
        await conn.commit()

        await _apply_migration(conn, 100, "Profile auto-create and updated_at triggers", _migration_100_triggers)


# --- Migrations ---

async def _schema_version(conn) -> int:
    cursor = await conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version")
    row = await cursor.fetchone()
    return row[0]


async def _apply_migration(conn, version: int, description: str, migration_fn) -> bool:
    """Run migration_fn once, recording it in schema_version. Returns True if it ran."""
    if await _schema_version(conn) >= version:
        return False
    logger.info("Applying migration %d: %s", version, description)
    await migration_fn(conn)
    await conn.execute("INSERT INTO schema_version (version, description) VALUES (?, ?)", (version, description))
    await conn.commit()
    return True


async def _migration_100_triggers(conn):
    await conn.execute("""
        CREATE TRIGGER IF NOT EXISTS on_user_created
        AFTER INSERT ON users
        FOR EACH ROW
        BEGIN
            INSERT INTO profiles (id, email, full_name) VALUES (NEW.id, NEW.email, NEW.full_name);
        END
    """)
    # Only fire when the caller did not touch updated_at itself, so the
    # trigger's own UPDATE does not re-enter.
    for table in ("projects", "prompts"):
        await conn.execute(f"""
            CREATE TRIGGER IF NOT EXISTS update_{table}_updated_at
            AFTER UPDATE ON {table}
            FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
            BEGIN
                UPDATE {table} SET updated_at = {_NOW} WHERE id = NEW.id;
            END
        """)


def _new_id() -> str:
    return uuid.uuid4().hex


def _writable(kwargs: dict, allowed: set[str]) -> dict:
    """Keep only the writable columns."""
    return {k: v for k, v in kwargs.items() if k in allowed}


# --- Users ---

_USER_PUBLIC_COLUMNS = "id, email, role, full_name, created_at, updated_at"


async def create_user(
    email: str,
    password_hash: str,
    role: str = "user",
    full_name: str | None = None,
    admin_if_first: bool = False,
) -> dict:
    """Insert a user; the on_user_created trigger adds the profile row.

    With admin_if_first the role is "admin" when the table is empty; the
    check runs inside the INSERT statement.
    """
    user_id = _new_id()
    await _db.write(
        "INSERT INTO users (id, email, password_hash, role, full_name) "
        "SELECT ?, ?, ?, CASE WHEN ? AND NOT EXISTS (SELECT 1 FROM users) THEN 'admin' ELSE ? END, ?",
        (user_id, email, password_hash, int(admin_if_first), role, full_name),
    )
    return await get_user_by_id(user_id)


async def get_user_by_email(email: str) -> dict | None:
    """Case-insensitive lookup. Includes password_hash, for login only."""
    return await _db.fetch_one("SELECT * FROM users WHERE email = ?", (email,))


async def get_user_by_id(user_id: str) -> dict | None:
    return await _db.fetch_one(f"SELECT {_USER_PUBLIC_COLUMNS} FROM users WHERE id = ?", (user_id,))


# --- Refresh tokens ---

async def store_refresh_token(user_id: str, token_hash: str, expires_at: str):
    await _db.write(
        "INSERT INTO refresh_tokens (user_id, token_hash, expires_at) VALUES (?, ?, ?)",
        (user_id, token_hash, expires_at),
    )


async def get_refresh_token(token_hash: str) -> dict | None:
    return await _db.fetch_one("SELECT * FROM refresh_tokens WHERE token_hash = ?", (token_hash,))


async def delete_refresh_token(token_hash: str):
    await _db.write("DELETE FROM refresh_tokens WHERE token_hash = ?", (token_hash,))


async def cleanup_expired_tokens() -> int:
    """Drop refresh tokens past their expiry. Returns how many went."""
    now = datetime.now(timezone.utc).isoformat()
    return await _db.write("DELETE FROM refresh_tokens WHERE expires_at < ?", (now,))


# --- Profiles ---

async def get_profile(profile_id: str) -> dict | None:
    """Profiles are readable by any signed-in user."""
    return await _db.fetch_one("SELECT * FROM profiles WHERE id = ?", (profile_id,))


async def update_profile(user_id: str, **kwargs) -> bool:
    """Edit the caller's own profile. Only full_name and avatar_url are writable."""
    fields = _writable(kwargs, {"full_name", "avatar_url"})
    if not fields:
        return False
    sets = ", ".join(f"{k} = ?" for k in fields)
    return await _db.write(f"UPDATE profiles SET {sets} WHERE id = ?", (*fields.values(), user_id)) > 0


# --- Projects ---

async def create_project(user_id: str, name: str, description: str | None = None) -> dict:
    project_id = _new_id()
    return await _db.insert_and_fetch(
        "INSERT INTO projects (id, user_id, name, description) VALUES (?, ?, ?, ?)",
        (project_id, user_id, name, description),
        "projects", project_id,
    )


async def get_projects(user_id: str) -> list[dict]:
    """The user's projects, newest first, each with its prompt_count."""
    return await _db.fetch_all(
        "SELECT p.*, "
        "(SELECT COUNT(*) FROM prompts pr WHERE pr.project_id = p.id) AS prompt_count "
        "FROM projects p WHERE p.user_id = ? ORDER BY p.created_at DESC",
        (user_id,),
    )


async def get_project(project_id: str, user_id: str) -> dict | None:
    return await _db.fetch_one("SELECT * FROM projects WHERE id = ? AND user_id = ?", (project_id, user_id))


async def update_project(project_id: str, user_id: str, **kwargs) -> bool:
    fields = _writable(kwargs, {"name", "description"})
    if not fields:
        return False
    sets = ", ".join(f"{k} = ?" for k in fields)
    count = await _db.write(
        f"UPDATE projects SET {sets} WHERE id = ? AND user_id = ?",
        (*fields.values(), project_id, user_id),
    )
    return count > 0


async def delete_project(project_id: str, user_id: str) -> bool:
    """Delete a project. Its prompts (and their runs) go with it."""
    count = await _db.write("DELETE FROM projects WHERE id = ? AND user_id = ?", (project_id, user_id))
    return count > 0


# --- Prompts ---

def _decode_prompt(row: dict | None) -> dict | None:
    """tags is stored as JSON text; hand it back as a list."""
    if row is None:
        return None
    try:
        row["tags"] = json.loads(row.get("tags") or "[]")
    except (TypeError, ValueError):
        logger.warning("Prompt %s has malformed tags, returning empty list", row.get("id"))
        row["tags"] = []
    return row


async def create_prompt(
    user_id: str,
    title: str,
    content: str,
    model: str = "gpt-4",
    temperature: float = 0.7,
    max_tokens: int = 1000,
    tags: list[str] | None = None,
    project_id: str | None = None,
) -> dict:
    """Create a prompt and return the stored row.

    Callers must have verified that project_id (if any) belongs to user_id.
    """
    prompt_id = _new_id()
    row = await _db.insert_and_fetch(
        "INSERT INTO prompts (id, user_id, project_id, title, content, model, temperature, max_tokens, tags) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (prompt_id, user_id, project_id, title, content, model, temperature, max_tokens, json.dumps(tags or [])),
        "prompts", prompt_id,
    )
    return _decode_prompt(row)


async def get_prompts(user_id: str, project_id: str | None = None) -> list[dict]:
    """The user's prompts, newest first, optionally within one project."""
    query = "SELECT * FROM prompts WHERE user_id = ?"
    params: tuple = (user_id,)
    if project_id:
        query += " AND project_id = ?"
        params += (project_id,)
    rows = await _db.fetch_all(query + " ORDER BY created_at DESC", params)
    return [_decode_prompt(r) for r in rows]


async def get_prompt(prompt_id: str, user_id: str) -> dict | None:
    row = await _db.fetch_one("SELECT * FROM prompts WHERE id = ? AND user_id = ?", (prompt_id, user_id))
    return _decode_prompt(row)


async def count_prompts(user_id: str) -> int:
    return await _db.scalar("SELECT COUNT(*) FROM prompts WHERE user_id = ?", (user_id,))


async def update_prompt(prompt_id: str, user_id: str, **kwargs) -> bool:
    """Edit a prompt. Returns False when it is not the user's.

    A content change bumps the version counter.
    """
    fields = _writable(kwargs, {"title", "content", "model", "temperature", "max_tokens", "tags", "project_id"})
    if not fields:
        return False
    if "tags" in fields:
        fields["tags"] = json.dumps(fields["tags"] or [])

    sets = [f"{k} = ?" for k in fields]
    params = list(fields.values())
    if "content" in fields:
        # SET expressions see the pre-update row, so the CASE compares old content
        sets.append("version = CASE WHEN content <> ? THEN version + 1 ELSE version END")
        params.append(fields["content"])
    count = await _db.write(
        f"UPDATE prompts SET {', '.join(sets)} WHERE id = ? AND user_id = ?",
        (*params, prompt_id, user_id),
    )
    return count > 0


async def delete_prompt(prompt_id: str, user_id: str) -> bool:
    """Delete a prompt; its runs are removed by the cascade."""
    count = await _db.write("DELETE FROM prompts WHERE id = ? AND user_id = ?", (prompt_id, user_id))
    return count > 0


# --- Runs (append-only) ---

async def save_run(
    user_id: str,
    prompt_id: str,
    model: str,
    response: str | None,
    tokens_used: int | None,
    latency_ms: int | None,
    cost_usd: float | None,
    status: str = "completed",
    error_message: str | None = None,
) -> dict:
    """Insert one run row and return it."""
    run_id = _new_id()
    return await _db.insert_and_fetch(
        "INSERT INTO runs (id, user_id, prompt_id, model, response, tokens_used, latency_ms, "
        "cost_usd, status, error_message) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (run_id, user_id, prompt_id, model, response, tokens_used, latency_ms, cost_usd, status, error_message),
        "runs", run_id,
    )


async def get_runs(user_id: str, prompt_id: str | None = None, limit: int = 50) -> list[dict]:
    """The user's runs, newest first."""
    query = "SELECT * FROM runs WHERE user_id = ?"
    params: tuple = (user_id,)
    if prompt_id:
        query += " AND prompt_id = ?"
        params += (prompt_id,)
    return await _db.fetch_all(query + " ORDER BY created_at DESC LIMIT ?", params + (limit,))


async def get_run(run_id: str, user_id: str) -> dict | None:
    return await _db.fetch_one("SELECT * FROM runs WHERE id = ? AND user_id = ?", (run_id, user_id))


async def count_runs(user_id: str) -> int:
    return await _db.scalar("SELECT COUNT(*) FROM runs WHERE user_id = ?", (user_id,))


# --- Analytics ---

_PERIOD_OFFSETS = {
    "7d": "-7 days",
    "30d": "-30 days",
    "90d": "-90 days",
    "all": None,
}


async def get_analytics_runs(user_id: str, period: str = "all") -> list[dict]:
    """Run rows in the period (oldest first) for aggregation in Python."""
    query = "SELECT id, prompt_id, model, tokens_used, latency_ms, cost_usd, status, created_at FROM runs WHERE user_id = ?"
    params: tuple = (user_id,)
    offset = _PERIOD_OFFSETS.get(period)
    if offset:
        query += " AND created_at > strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)"
        params += (offset,)
    return await _db.fetch_all(query + " ORDER BY created_at ASC", params)


# --- Audit log ---

async def log_audit(
    user_id: str | None,
    username: str,
    action: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    detail: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
):
    """Record an audit event. A failure is logged, never raised to the request."""
    try:
        await _db.write(
            "INSERT INTO audit_log (user_id, username, action, resource_type, resource_id, detail, "
            "ip_address, user_agent) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (user_id, username, action, resource_type, resource_id,
             json.dumps(detail) if detail else None, ip_address, user_agent),
        )
    except aiosqlite.Error:
        logger.exception("Audit logging failed (action=%s, user_id=%s)", action, user_id)


async def cleanup_audit_log(retention_days: int = 90) -> int:
    """Delete audit entries older than retention_days."""
    return await _db.write(
        "DELETE FROM audit_log WHERE timestamp < strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)",
        (f"-{retention_days} days",),
    )
