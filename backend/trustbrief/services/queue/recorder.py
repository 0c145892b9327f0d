"""
Persists queue activity to the jobs table.

Plugged into QueueManager(recorder=JobRecorder(session_factory)). Each call
upserts the job's current state in one INSERT ... ON CONFLICT statement, so
two writers racing on a new job id both land on the same row. The manager
swallows (and logs) any error from here, so a datastore hiccup never fails
the job itself.
"""

from datetime import datetime

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustbrief.models.job import JobRecord
from trustbrief.services.queue.jobs import Job

_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class JobRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, job: Job) -> None:
        now = datetime.utcnow()
        values = dict(
            queue=job.queue,
            run_id=job.payload.run_id,
            correlation_id=job.payload.correlation_id,
            idempotency_key=job.idempotency_key,
            payload=job.payload.model_dump(mode="json"),
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            backoff=job.backoff.value,
            status=job.status.value,
            last_error=job.last_error,
            updated_at=now,
        )
        async with self.session_factory() as session:
            dialect = session.get_bind().dialect.name
            if dialect not in _INSERTS:
                raise NotImplementedError(f"No job upsert for dialect {dialect}")
            statement = _INSERTS[dialect](JobRecord).values(id=job.id, created_at=now, **values)
            statement = statement.on_conflict_do_update(index_elements=[JobRecord.id], set_=values)
            await session.execute(statement)
            await session.commit()
