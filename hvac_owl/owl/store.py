"""SQLite store for Project Owl.

Handles:
- Connection management
- Schema creation
- Channel and analysis upserts (full replacement per refresh)
- Project records, open tasks and sync progress
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Optional

from hvac_owl.config import get_settings
from hvac_owl.owl.schemas import ChannelAnalysis, MessageInsights, Project, Task, TaskCreate

logger = logging.getLogger(__name__)

_LIST_COLUMNS = ("decisions", "progress", "questions", "action_items", "risks")


class StoreError(Exception):
    """Raised when the database is unavailable or a query fails."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AnalysisStore:
    """Persists channels, their latest analysis and projects."""

    def __init__(self, database_path: Optional[str] = None):
        """Initialize the store.

        Args:
            database_path: SQLite file path (or ``:memory:``). Defaults to config value.
        """
        self.database_path = database_path or get_settings().database_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open the database connection."""
        try:
            self._conn = sqlite3.connect(self.database_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            logger.info(f"Connected to SQLite at {self.database_path}")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open database {self.database_path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("Disconnected from SQLite")

    @property
    def conn(self) -> sqlite3.Connection:
        """Get the connection, connecting if necessary."""
        if not self._conn:
            self.connect()
        return self._conn

    def __enter__(self) -> "AnalysisStore":
        """Context manager entry."""
        self.connect()
        self.setup_schema()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                with self.conn:
                    return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Query failed: {e}") from e

    # =========================================================================
    # Schema Management
    # =========================================================================

    def setup_schema(self) -> None:
        """Create tables if they do not exist."""
        statements = [
            """
            CREATE TABLE IF NOT EXISTS channels (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS analyses (
                channel_id TEXT PRIMARY KEY REFERENCES channels (id) ON DELETE CASCADE,
                summary TEXT NOT NULL DEFAULT '',
                decisions TEXT NOT NULL DEFAULT '[]',
                progress TEXT NOT NULL DEFAULT '[]',
                questions TEXT NOT NULL DEFAULT '[]',
                action_items TEXT NOT NULL DEFAULT '[]',
                risks TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                last_message_ts TEXT,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS projects_channel ON projects (channel_id)",
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
                description TEXT NOT NULL,
                assignee TEXT,
                due_date TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS tasks_project ON tasks (project_id, status)",
        ]
        for statement in statements:
            self._execute(statement)
        logger.info("Database schema setup complete")

    # =========================================================================
    # Channels & analyses
    # =========================================================================

    def upsert_channel(self, channel_id: str, name: Optional[str]) -> None:
        self._execute(
            """
            INSERT INTO channels (id, name, last_updated) VALUES (?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET name = excluded.name, last_updated = excluded.last_updated
            """,
            (channel_id, name or "Unknown Channel", _now()),
        )

    def upsert_analysis(self, channel_id: str, insights: MessageInsights) -> ChannelAnalysis:
        """Replace the stored analysis of ``channel_id`` with ``insights``.

        The channel row must exist (see :meth:`upsert_channel`).
        """
        now = _now()
        values = [json.dumps(getattr(insights, column)) for column in _LIST_COLUMNS]
        self._execute(
            """
            INSERT INTO analyses
                (channel_id, summary, decisions, progress, questions, action_items, risks,
                 created_at, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (channel_id) DO UPDATE SET
                summary = excluded.summary,
                decisions = excluded.decisions,
                progress = excluded.progress,
                questions = excluded.questions,
                action_items = excluded.action_items,
                risks = excluded.risks,
                last_updated = excluded.last_updated
            """,
            (channel_id, insights.summary, *values, now, now),
        )
        logger.info(f"Stored analysis for channel {channel_id}")
        return self.get_analysis(channel_id)

    def get_analysis(self, channel_id: str) -> Optional[ChannelAnalysis]:
        rows = self._execute(
            """
            SELECT a.*, c.name AS channel_name FROM analyses a
            LEFT JOIN channels c ON c.id = a.channel_id
            WHERE a.channel_id = ?
            """,
            (channel_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return ChannelAnalysis(
            channel_id=row["channel_id"],
            channel_name=row["channel_name"],
            summary=row["summary"],
            created_at=row["created_at"],
            last_updated=row["last_updated"],
            **{column: json.loads(row[column]) for column in _LIST_COLUMNS},
        )

    # =========================================================================
    # Projects
    # =========================================================================

    def create_project(self, name: str, channel_id: str) -> Project:
        created_at = _now()
        with self._lock:
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        "INSERT INTO projects (name, channel_id, created_at) VALUES (?, ?, ?)",
                        (name, channel_id, created_at),
                    )
                    project_id = cursor.lastrowid
            except sqlite3.Error as e:
                raise StoreError(f"Failed to create project: {e}") from e
        logger.info(f"Created project {name} for channel {channel_id}")
        return Project(id=project_id, name=name, channel_id=channel_id, created_at=created_at)

    def list_projects(self) -> list[Project]:
        """All projects with the latest analysis of their channel and their open tasks."""
        rows = self._execute("SELECT * FROM projects ORDER BY id")
        return [
            Project(
                id=row["id"],
                name=row["name"],
                channel_id=row["channel_id"],
                created_at=row["created_at"],
                last_message_ts=row["last_message_ts"],
                latest_analysis=self.get_analysis(row["channel_id"]),
                tasks=self.open_tasks(row["id"]),
            )
            for row in rows
        ]

    def record_last_message(self, project_id: int, ts: str) -> None:
        """Remember the newest synced message so the next sync starts after it."""
        self._execute("UPDATE projects SET last_message_ts = ? WHERE id = ?", (ts, project_id))

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_task(self, project_id: int, task: TaskCreate) -> Task:
        created_at = _now()
        with self._lock:
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        """
                        INSERT INTO tasks (project_id, description, assignee, due_date, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (project_id, task.description, task.assignee, task.due_date, created_at),
                    )
                    task_id = cursor.lastrowid
            except sqlite3.Error as e:
                raise StoreError(f"Failed to create task: {e}") from e
        return Task(id=task_id, project_id=project_id, created_at=created_at, **task.model_dump())

    def open_tasks(self, project_id: int) -> list[Task]:
        """Open tasks of a project, earliest due date first, undated last."""
        rows = self._execute(
            """
            SELECT * FROM tasks WHERE project_id = ? AND status = 'open'
            ORDER BY due_date IS NULL, due_date, id
            """,
            (project_id,),
        )
        return [
            Task(
                id=row["id"],
                project_id=row["project_id"],
                description=row["description"],
                assignee=row["assignee"],
                due_date=row["due_date"],
                status=row["status"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
