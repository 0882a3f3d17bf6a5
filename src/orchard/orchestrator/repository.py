"""SQLite persistence for the manager conversation and worker run history."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlmodel import Session, col, select

from orchard.orchestrator.backend import Message
from orchard.orchestrator.models import WorkerResult
from orchard.storage.alembic_runner import migrate_state_db
from orchard.storage.common import create_state_engine, utc_now
from orchard.storage.sqlmodel_models import ConversationMessage, WorkerRun

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunView:
    """Readable worker run row for CLI and status output."""

    run_id: int
    issue_id: str
    endpoint_name: str
    started_at: datetime
    finished_at: datetime | None
    outcome: str | None
    confirmed: bool | None
    exit_code: int | None
    message: str | None


class ManagerRepository:
    """Persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = create_state_engine(db_path)

    def init_schema(self) -> None:
        """Create or migrate the database to the latest schema."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        migrate_state_db(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def append_message(self, message: Message) -> int:
        with Session(self.engine) as session:
            row = ConversationMessage(
                role=message.role,
                content_json=json.dumps(message.to_payload()["content"], ensure_ascii=False),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return int(row.message_id or 0)

    def load_recent_messages(self, limit: int) -> list[Message]:
        """Return the last `limit` messages in conversation order."""

        if limit <= 0:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(ConversationMessage)
                .order_by(col(ConversationMessage.message_id).desc())
                .limit(limit),
            ).all()

        messages: list[Message] = []
        for row in reversed(rows):
            try:
                content = json.loads(row.content_json)
                messages.append(Message.from_payload({"role": row.role, "content": content}))
            except (json.JSONDecodeError, ValueError) as error:
                logger.warning("Skipping malformed message %s: %s", row.message_id, error)
        return messages

    def count_messages(self) -> int:
        with Session(self.engine) as session:
            return len(session.exec(select(col(ConversationMessage.message_id))).all())

    def start_worker_run(self, *, issue_id: str, endpoint_name: str) -> int:
        with Session(self.engine) as session:
            row = WorkerRun(issue_id=issue_id, endpoint_name=endpoint_name, started_at=utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return int(row.run_id or 0)

    def finish_worker_run(self, *, run_id: int, result: WorkerResult) -> None:
        with Session(self.engine) as session:
            row = session.get(WorkerRun, run_id)
            if row is None:
                logger.warning("Worker run %s not found; outcome not recorded", run_id)
                return
            row.finished_at = utc_now()
            row.outcome = result.status.value
            row.confirmed = result.confirmed
            row.exit_code = result.exit_code
            row.message = result.message
            session.add(row)
            session.commit()

    def list_worker_runs(self, issue_id: str | None = None) -> list[WorkerRunView]:
        with Session(self.engine) as session:
            statement = select(WorkerRun).order_by(col(WorkerRun.started_at).desc())
            if issue_id is not None:
                statement = statement.where(WorkerRun.issue_id == issue_id)
            rows = session.exec(statement).all()
            return [
                WorkerRunView(
                    run_id=int(row.run_id or 0),
                    issue_id=row.issue_id,
                    endpoint_name=row.endpoint_name,
                    started_at=row.started_at,
                    finished_at=row.finished_at,
                    outcome=row.outcome,
                    confirmed=row.confirmed,
                    exit_code=row.exit_code,
                    message=row.message,
                )
                for row in rows
            ]
