"""Test doubles and a small business table used by pipeline tests."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import String, func, select
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from write_pipeline.memory_store import InMemoryCounterStore
from write_pipeline.pipeline import OperationResult, WriteContext


class FakeClock:
    """Manually advanced clock for time-dependent store and limiter tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ContendedCounterStore(InMemoryCounterStore):
    """Store whose compare-and-set always loses, as under heavy contention."""

    def __init__(self) -> None:
        super().__init__()
        self.cas_calls = 0

    async def compare_and_set(
        self, key: str, expected: str | None, new_value: str, ttl_seconds: int
    ) -> bool:
        self.cas_calls += 1
        return False


class TaskBase(DeclarativeBase):
    pass


class TaskRow(TaskBase):
    """Business row created by the task-creation operation."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)


async def create_task_table(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(TaskBase.metadata.create_all)


async def count_tasks(engine: AsyncEngine) -> int:
    async with engine.connect() as conn:
        return int((await conn.execute(select(func.count()).select_from(TaskRow))).scalar_one())


class TaskCreation:
    """Business operation that inserts a task and appends a task.created event."""

    def __init__(self, fail_after_append: bool = False, status_code: int = 201) -> None:
        self.calls = 0
        self.fail_after_append = fail_after_append
        self.status_code = status_code

    async def __call__(self, context: WriteContext) -> OperationResult:
        self.calls += 1
        body = context.request.body or {}
        task_id = str(uuid4())
        context.session.add(
            TaskRow(id=task_id, tenant_id=context.tenant_id, title=body.get("title", ""))
        )
        await context.session.flush()
        await context.add_event(
            "task.created",
            "tasks.events",
            {"task_id": task_id, "title": body.get("title", "")},
        )
        if self.fail_after_append:
            raise RuntimeError("Forced failure after outbox append")
        return OperationResult(
            status_code=self.status_code,
            body={"id": task_id, "title": body.get("title", "")},
            headers={"Location": f"/api/v1/tasks/{task_id}"},
        )
