import json
import logging
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional

from .onboarding import SetupStatus, UserProfile, normalize_claim

log = logging.getLogger(__name__)

PROCESSED_ID_RETENTION = 5000


class ProfileStore:
    """SQLite-backed user profiles plus the agent's warm-restart mirrors.

    Profiles are the only records that must survive a restart. Context and
    processed-id rows are caches: losing them costs at most a re-welcome.
    """

    def __init__(self, db_path: str = "memory.db"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_profiles (
                  user_id TEXT PRIMARY KEY,
                  fkey_id TEXT,
                  data TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_profiles_fkey ON user_profiles(fkey_id)"
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS interactions (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  payload TEXT NOT NULL,
                  ts REAL NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_contexts (
                  context_key TEXT PRIMARY KEY,
                  data TEXT NOT NULL,
                  last_activity REAL NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_messages (
                  message_id TEXT PRIMARY KEY,
                  ts REAL NOT NULL
                )
                """
            )

    def close(self) -> None:
        self.conn.close()

    # ----- profiles -----

    def _row_to_profile(self, row: sqlite3.Row) -> Optional[UserProfile]:
        try:
            payload = json.loads(row["data"])
        except json.JSONDecodeError:
            log.warning("Discarding unreadable profile row for %s", row["user_id"])
            return None
        try:
            return UserProfile.from_dict(payload)
        except (KeyError, ValueError) as exc:
            log.warning("Profile for %s is inconsistent (%s); treating as new", row["user_id"], exc)
            return UserProfile(user_id=str(row["user_id"]), setup_status=SetupStatus.NEW)

    def get_by_user(self, user_id: str) -> Optional[UserProfile]:
        cur = self.conn.execute(
            "SELECT user_id, data FROM user_profiles WHERE user_id=?",
            (user_id.lower(),),
        )
        row = cur.fetchone()
        if not row:
            return None
        return self._row_to_profile(row)

    def get_by_identity(self, claim: str) -> Optional[UserProfile]:
        cur = self.conn.execute(
            "SELECT user_id, data FROM user_profiles WHERE fkey_id=?",
            (normalize_claim(claim),),
        )
        row = cur.fetchone()
        if not row:
            return None
        return self._row_to_profile(row)

    def upsert(self, profile: UserProfile) -> None:
        payload = profile.to_dict()
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO user_profiles(user_id, fkey_id, data)
                VALUES(?,?,?)
                ON CONFLICT(user_id)
                DO UPDATE SET fkey_id=excluded.fkey_id, data=excluded.data
                """,
                (
                    profile.user_id.lower(),
                    profile.fkey_id,
                    json.dumps(payload, ensure_ascii=False, default=str),
                ),
            )

    def log_interaction(self, user_id: str, kind: str, payload: Optional[Dict[str, Any]] = None) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO interactions(user_id, kind, payload, ts) VALUES(?,?,?,?)",
                (
                    user_id.lower(),
                    kind,
                    json.dumps(payload or {}, ensure_ascii=False, default=str),
                    time.time(),
                ),
            )

    def interactions(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        cur = self.conn.execute(
            "SELECT kind, payload, ts FROM interactions WHERE user_id=? ORDER BY id DESC LIMIT ?",
            (user_id.lower(), limit),
        )
        return [
            {"kind": row["kind"], "payload": json.loads(row["payload"]), "ts": row["ts"]}
            for row in cur.fetchall()
        ]

    # ----- conversation context mirror -----

    def save_context(self, key: str, data: Dict[str, Any]) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO conversation_contexts(context_key, data, last_activity)
                VALUES(?,?,?)
                ON CONFLICT(context_key)
                DO UPDATE SET data=excluded.data, last_activity=excluded.last_activity
                """,
                (key, json.dumps(data, ensure_ascii=False), float(data.get("last_activity") or time.time())),
            )

    def load_context(self, key: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.execute(
            "SELECT data FROM conversation_contexts WHERE context_key=?", (key,)
        )
        row = cur.fetchone()
        if not row:
            return None
        try:
            return json.loads(row["data"])
        except json.JSONDecodeError:
            return None

    def purge_contexts(self, older_than: float) -> int:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM conversation_contexts WHERE last_activity < ?", (older_than,)
            )
        return cur.rowcount

    # ----- processed message mirror -----

    def remember_message_id(self, message_id: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO processed_messages(message_id, ts) VALUES(?,?)",
                (message_id, time.time()),
            )
            self.conn.execute(
                """
                DELETE FROM processed_messages WHERE message_id NOT IN (
                  SELECT message_id FROM processed_messages ORDER BY ts DESC LIMIT ?
                )
                """,
                (PROCESSED_ID_RETENTION,),
            )

    def recent_message_ids(self, limit: int) -> List[str]:
        cur = self.conn.execute(
            "SELECT message_id FROM processed_messages ORDER BY ts DESC LIMIT ?",
            (limit,),
        )
        ids = [row["message_id"] for row in cur.fetchall()]
        ids.reverse()
        return ids
