"""
SymptoMap — Database Layer
Every collection lives in one JSON document: a local file by default, or a
single JSONB row in PostgreSQL when DATABASE_URL is set. Callers read with
get_db(), mutate the returned dict, and write it back with save_db().
"""
import os, json, uuid
from datetime import datetime, timezone
from loguru import logger

from symptomap.config import DB_PATH, PERSIST_DATA

DATABASE_URL = os.environ.get("DATABASE_URL")

# ============================================================
# COLLECTIONS
# ============================================================
EMPTY_DB = {
    "users": [], "outbreaks": [], "predictions": [],
    "symptom_reports": [], "symptom_clusters": [], "health_alerts": [], "analysis_cache": [],
    "audit_logs": [], "websocket_connections": [], "revoked_tokens": [],
}


def _fresh_db() -> dict:
    return json.loads(json.dumps(EMPTY_DB))


def _with_collections(db: dict) -> dict:
    """Add any collection missing from a document written by an older version."""
    for name in EMPTY_DB:
        db.setdefault(name, [])
    return db


# ============================================================
# FILE STORE
# ============================================================
class FileStore:
    """In-memory document, mirrored to DB_PATH when PERSIST_DATA is on."""

    def __init__(self, path=DB_PATH, persist: bool = PERSIST_DATA):
        self.path = path
        self.persist = persist
        self._doc = None

    def _read(self) -> dict:
        if not (self.persist and self.path.exists()):
            return _fresh_db()
        try:
            with open(self.path) as f:
                return _with_collections(json.load(f))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"[DB] Could not read {self.path}: {e}, starting empty")
            return _fresh_db()

    def load(self) -> dict:
        if self._doc is None:
            self._doc = self._read()
        return self._doc

    def save(self, db: dict):
        self._doc = db
        if self.persist:
            with open(self.path, "w") as f:
                json.dump(db, f, indent=2, default=str)

    def ping(self) -> bool:
        self.load()
        return True


# ============================================================
# POSTGRES STORE (optional)
# ============================================================
class PostgresStore:
    """One row of table symptomap_state holds the whole document."""

    def __init__(self, url: str):
        from psycopg2.pool import SimpleConnectionPool
        self.pool = SimpleConnectionPool(1, 5, url)
        self._run(self._create_table, commit=True)
        logger.info("[DB] Connected to PostgreSQL")

    def _run(self, fn, commit: bool = False):
        conn = self.pool.getconn()
        try:
            cur = conn.cursor()
            result = fn(cur)
            if commit:
                conn.commit()
            return result
        except Exception as e:
            logger.error(f"[DB] PostgreSQL error: {e}")
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    @staticmethod
    def _create_table(cur):
        cur.execute("""
            CREATE TABLE IF NOT EXISTS symptomap_state (
                id TEXT PRIMARY KEY DEFAULT 'main',
                data JSONB NOT NULL DEFAULT '{}',
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        cur.execute("INSERT INTO symptomap_state (id, data) VALUES ('main', %s) ON CONFLICT DO NOTHING",
                    (json.dumps(EMPTY_DB),))

    def load(self) -> dict:
        def select(cur):
            cur.execute("SELECT data FROM symptomap_state WHERE id='main'")
            row = cur.fetchone()
            return _with_collections(row[0]) if row else _fresh_db()
        return self._run(select)

    def save(self, db: dict):
        def update(cur):
            cur.execute("UPDATE symptomap_state SET data=%s, updated_at=NOW() WHERE id='main'",
                        (json.dumps(db, default=str),))
        self._run(update, commit=True)

    def ping(self) -> bool:
        return self._run(lambda cur: cur.execute("SELECT 1") or True)


# ============================================================
# PUBLIC API
# ============================================================
if DATABASE_URL:
    logger.info("[DB] Using PostgreSQL backend")
    store = PostgresStore(DATABASE_URL)
else:
    logger.info(f"[DB] Using file backend ({DB_PATH.name})")
    store = FileStore()


def get_db() -> dict:
    return store.load()


def save_db(db: dict):
    store.save(db)


def ping_db() -> bool:
    return store.ping()


def reset_db():
    """Replace every collection with an empty one."""
    store.save(_fresh_db())


# ============================================================
# UTILITIES
# ============================================================
def new_id() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def now_iso() -> str:
    return now_utc().isoformat()

def parse_ts(value) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
