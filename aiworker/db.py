"""SQLite state persistence with WAL mode."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import aiosqlite

from .config import ToolsConfig, load_tools_config
from .models import (
    KIND_CLARIFICATION,
    KIND_FEEDBACK,
    Clarification,
    Feedback,
    Task,
    ToolRecord,
    partition_of,
    utc_now,
    work_item_from_dict,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    partition TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    document TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_snapshots (
    batch_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    document TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (batch_id, task_id)
);

CREATE TABLE IF NOT EXISTS run_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id TEXT NOT NULL,
    level TEXT NOT NULL DEFAULT 'info',
    message TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_records (
    name TEXT PRIMARY KEY,
    available INTEGER NOT NULL DEFAULT 1,
    last_success_at INTEGER,
    last_failure_at INTEGER,
    average_response_ms REAL,
    failure_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_work_items_partition ON work_items(partition, status);
CREATE INDEX IF NOT EXISTS idx_run_log_work_item ON run_log(work_item_id);
CREATE INDEX IF NOT EXISTS idx_documents_work_item ON documents(work_item_id);
"""

LOG_LEVELS = ("info", "warn", "error")


@dataclass
class PendingItems:
    clarifications: list[Clarification] = field(default_factory=list)
    feedbacks: list[Feedback] = field(default_factory=list)


class Database:
    def __init__(
        self,
        db_path: str,
        project_root: str | None = None,
        tools_config: ToolsConfig | None = None,
    ):
        self.db_path = db_path
        self.project_root = project_root
        self.tools_config = tools_config
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ---------------------------------------------------------------
    # Work items
    # ---------------------------------------------------------------

    async def save_work_item(self, item: Clarification | Feedback) -> None:
        now = utc_now()
        if not item.created_at:
            item.created_at = now
        item.updated_at = now
        await self._conn.execute(
            """INSERT INTO work_items
               (id, kind, partition, status, document, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 status=excluded.status,
                 document=excluded.document,
                 updated_at=excluded.updated_at
            """,
            (
                item.id, item.kind, partition_of(item.id), item.status.value,
                json.dumps(item.to_dict(), ensure_ascii=False),
                item.created_at, item.updated_at,
            ),
        )
        await self._conn.commit()

    async def load_work_item(self, item_id: str) -> Clarification | Feedback | None:
        cursor = await self._conn.execute(
            "SELECT document FROM work_items WHERE id = ?", (item_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return work_item_from_dict(json.loads(row["document"]))

    async def list_by_partition(self, partition: str) -> list[Clarification | Feedback]:
        cursor = await self._conn.execute(
            "SELECT document FROM work_items WHERE partition = ? ORDER BY created_at, id",
            (partition,),
        )
        rows = await cursor.fetchall()
        return [work_item_from_dict(json.loads(r["document"])) for r in rows]

    async def list_pending_by_partition(self, partition: str) -> PendingItems:
        """Clarifications still ``pending`` and feedbacks ``pending``/``analyzing``."""
        pending = PendingItems()
        for item in await self.list_by_partition(partition):
            status = item.status.value
            if item.kind == KIND_CLARIFICATION and status == "pending":
                pending.clarifications.append(item)
            elif item.kind == KIND_FEEDBACK and status in ("pending", "analyzing"):
                pending.feedbacks.append(item)
        return pending

    async def update_status(self, item_id: str, status) -> bool:
        item = await self.load_work_item(item_id)
        if item is None:
            return False
        item.status = type(item.status)(status.value if hasattr(status, "value") else status)
        await self.save_work_item(item)
        return True

    # ---------------------------------------------------------------
    # Task snapshots
    # ---------------------------------------------------------------

    async def save_task_snapshot(self, batch_id: str, tasks: list[Task]) -> None:
        now = utc_now()
        await self._conn.execute(
            "DELETE FROM task_snapshots WHERE batch_id = ?", (batch_id,)
        )
        await self._conn.executemany(
            """INSERT INTO task_snapshots (batch_id, task_id, position, document, updated_at)
               VALUES (?,?,?,?,?)""",
            [
                (batch_id, t.id, i, json.dumps(t.to_dict(), ensure_ascii=False), now)
                for i, t in enumerate(tasks)
            ],
        )
        await self._conn.commit()

    async def load_task_snapshot(self, batch_id: str) -> list[Task]:
        cursor = await self._conn.execute(
            "SELECT document FROM task_snapshots WHERE batch_id = ? ORDER BY position",
            (batch_id,),
        )
        rows = await cursor.fetchall()
        return [Task.from_dict(json.loads(r["document"])) for r in rows]

    async def save_task_result(self, batch_id: str, task: Task) -> bool:
        """Replace one task inside an existing snapshot. Unknown tasks are ignored."""
        cursor = await self._conn.execute(
            "UPDATE task_snapshots SET document = ?, updated_at = ? "
            "WHERE batch_id = ? AND task_id = ?",
            (json.dumps(task.to_dict(), ensure_ascii=False), utc_now(), batch_id, task.id),
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    # ---------------------------------------------------------------
    # Run log and documents
    # ---------------------------------------------------------------

    async def append_log(self, item_id: str, message: str, level: str = "info") -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level!r}")
        await self._conn.execute(
            "INSERT INTO run_log (work_item_id, level, message, created_at) VALUES (?,?,?,?)",
            (item_id, level, message, utc_now()),
        )
        await self._conn.commit()

    async def get_logs(self, item_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM run_log WHERE work_item_id = ? ORDER BY id",
            (item_id,),
        )
        rows = await cursor.fetchall()
        return [
            {"level": r["level"], "message": r["message"], "created_at": r["created_at"]}
            for r in rows
        ]

    async def save_document(self, item_id: str, name: str, content: str) -> None:
        await self._conn.execute(
            "INSERT INTO documents (work_item_id, name, content, created_at) VALUES (?,?,?,?)",
            (item_id, name, content, utc_now()),
        )
        await self._conn.commit()

    async def get_documents(self, item_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM documents WHERE work_item_id = ? ORDER BY id",
            (item_id,),
        )
        rows = await cursor.fetchall()
        return [
            {"name": r["name"], "content": r["content"], "created_at": r["created_at"]}
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Tool records and config
    # ---------------------------------------------------------------

    async def load_tool_records(self) -> list[ToolRecord]:
        cursor = await self._conn.execute("SELECT * FROM tool_records ORDER BY name")
        rows = await cursor.fetchall()
        return [
            ToolRecord(
                name=r["name"],
                available=bool(r["available"]),
                last_success_at=r["last_success_at"],
                last_failure_at=r["last_failure_at"],
                average_response_ms=r["average_response_ms"],
                failure_count=r["failure_count"],
            )
            for r in rows
        ]

    async def save_tool_records(self, records: list[ToolRecord]) -> None:
        await self._conn.executemany(
            """INSERT INTO tool_records
               (name, available, last_success_at, last_failure_at,
                average_response_ms, failure_count)
               VALUES (?,?,?,?,?,?)
               ON CONFLICT(name) DO UPDATE SET
                 available=excluded.available,
                 last_success_at=excluded.last_success_at,
                 last_failure_at=excluded.last_failure_at,
                 average_response_ms=excluded.average_response_ms,
                 failure_count=excluded.failure_count
            """,
            [
                (
                    r.name, int(r.available), r.last_success_at, r.last_failure_at,
                    r.average_response_ms, r.failure_count,
                )
                for r in records
            ],
        )
        await self._conn.commit()

    async def load_tool_config(self) -> ToolsConfig:
        """Current tool configuration; re-read from disk on every call."""
        if self.tools_config is not None:
            return self.tools_config
        if self.project_root:
            return load_tools_config(self.project_root)
        return ToolsConfig()
