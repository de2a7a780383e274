"""
Integration tests for the complete bulk update pipeline against PostgreSQL
"""

import uuid
import pytest
import pytest_asyncio
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ingestion.job_store import SqlJobStore
from ingestion.runner import BulkUpdateRunner
from ingestion.schema_guard import SchemaGuard
from ingestion.staging import StagingLoader
from ingestion.updater import ChunkedUpdater, ConsistencyMode
from ingestion.validator import ReferentialValidator
from ingestion.progress import ProgressChannel
from models.audit import AuditRecord
from models.base import JobStatus

pytestmark = pytest.mark.integration

DESTINATION_DDL = [
    "CREATE TABLE main_table (pk_col INTEGER PRIMARY KEY, name TEXT, category_name TEXT, status TEXT, updated_note TEXT)",
    "CREATE TABLE categories (name TEXT NOT NULL)",
    "CREATE TABLE statuses (name TEXT NOT NULL)",
    "INSERT INTO categories (name) VALUES ('Tools'), ('Garden')",
    "INSERT INTO statuses (name) VALUES ('active'), ('inactive')",
    "INSERT INTO main_table (pk_col, name, category_name, status) VALUES "
    "(1, 'old one', 'Tools', 'active'), (2, 'old two', 'Tools', 'active'), "
    "(3, 'old three', 'Garden', 'inactive')",
]


@pytest_asyncio.fixture
async def database(test_engine):
    async with test_engine.begin() as conn:
        for statement in DESTINATION_DDL:
            await conn.execute(text(statement))

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.execute(text("DROP TABLE IF EXISTS main_table, categories, statuses"))


@pytest.fixture
def session_maker(database):
    return async_sessionmaker(database, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def job_store(session_maker):
    return SqlJobStore(session_maker)


def build_runner(contract, job_store, engine, consistency_mode=ConsistencyMode.PER_CHUNK):
    return BulkUpdateRunner(
        contract=contract,
        job_store=job_store,
        channel=ProgressChannel(),
        connect=engine.connect,
        schema_guard=SchemaGuard(contract),
        loader=StagingLoader(read_chunk_rows=2),
        validator=ReferentialValidator(contract),
        updater=ChunkedUpdater(contract, chunk_size=2, consistency_mode=consistency_mode),
    )


async def destination_rows(engine):
    async with engine.connect() as conn:
        result = await conn.execute(
            text("SELECT pk_col, name, category_name, status FROM main_table ORDER BY pk_col")
        )
        return [tuple(row) for row in result]


async def submit(job_store, write_csv, content):
    job_id = uuid.uuid4()
    await job_store.create_job(job_id, submitted_by="alice", file_name="update.csv")
    return job_id, write_csv(content)


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", [ConsistencyMode.PER_CHUNK, ConsistencyMode.ALL_OR_NOTHING])
async def test_valid_upload_updates_destination(contract, database, job_store, session_maker, write_csv, mode):
    job_id, path = await submit(
        job_store,
        write_csv,
        "pk_col,name,category_name,status\n"
        "1,new one, tools ,INACTIVE\n"
        "2,new two,Garden,active\n"
        "3,new three,Garden,active\n"
        "99,nobody,Tools,active\n",
    )

    outcome = await build_runner(contract, job_store, database, mode).run(job_id, path, "alice")

    assert outcome.status is JobStatus.COMPLETED
    job = await job_store.get_job(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.error_count == 0
    assert job.rows_staged == 4
    assert job.rows_updated == 3
    assert job.chunks_completed == 2

    assert await destination_rows(database) == [
        (1, "new one", " tools ", "INACTIVE"),
        (2, "new two", "Garden", "active"),
        (3, "new three", "Garden", "active"),
    ]

    async with session_maker() as session:
        audits = (await session.execute(
            select(AuditRecord).where(AuditRecord.job_id == job_id).order_by(AuditRecord.record_key)
        )).scalars().all()

    assert [audit.record_key for audit in audits] == ["1", "2", "3"]
    assert audits[0].old_values["name"] == "old one"
    assert audits[0].new_values["name"] == "new one"
    assert audits[0].changed_by == "alice"


@pytest.mark.asyncio
async def test_missing_column_fails_without_errors(contract, database, job_store, write_csv):
    job_id, path = await submit(
        job_store,
        write_csv,
        "pk_col,name,category_name\n1,new one,Tools\n",
    )

    outcome = await build_runner(contract, job_store, database).run(job_id, path, "alice")

    assert outcome.status is JobStatus.FAILED
    assert await job_store.count_errors(job_id) == 0
    assert (await destination_rows(database))[0] == (1, "old one", "Tools", "active")


@pytest.mark.asyncio
async def test_unknown_values_are_reported_per_line(contract, database, job_store, write_csv):
    job_id, path = await submit(
        job_store,
        write_csv,
        "pk_col,name,category_name,status\n"
        "1,new one,Toolz,active\n"
        "2,new two,Tools,active\n"
        "3,new three,Toolz,retired\n",
    )
    before = await destination_rows(database)

    outcome = await build_runner(contract, job_store, database).run(job_id, path, "alice")

    assert outcome.status is JobStatus.FAILED
    job = await job_store.get_job(job_id)
    assert job.error_count == 3
    assert job.completed_at is not None

    errors = await job_store.list_errors(job_id)
    assert [(e.line_number, e.column_name, e.invalid_value) for e in errors] == [
        (2, "category_name", "Toolz"),
        (4, "category_name", "Toolz"),
        (4, "status", "retired"),
    ]
    assert errors[0].reason == "Value not found in categories"

    assert await destination_rows(database) == before


@pytest.mark.asyncio
async def test_short_row_fails_and_leaves_destination_unchanged(contract, database, job_store, write_csv):
    job_id, path = await submit(
        job_store,
        write_csv,
        "pk_col,name,category_name,status\n"
        "1,new one,Tools,active\n"
        "2,new two\n",
    )
    before = await destination_rows(database)

    outcome = await build_runner(contract, job_store, database).run(job_id, path, "alice")

    assert outcome.status is JobStatus.FAILED
    job = await job_store.get_job(job_id)
    assert "fewer fields" in job.error_message
    assert job.rows_updated is None
    assert await destination_rows(database) == before


@pytest.mark.asyncio
async def test_blank_lines_keep_error_line_numbers(contract, database, job_store, write_csv):
    job_id, path = await submit(
        job_store,
        write_csv,
        "pk_col,name,category_name,status\n"
        "1,new one,Tools,active\n"
        "\n"
        "3,new three,Toolz,active\n",
    )

    outcome = await build_runner(contract, job_store, database).run(job_id, path, "alice")

    assert outcome.status is JobStatus.FAILED
    errors = await job_store.list_errors(job_id)
    assert [(e.line_number, e.column_name, e.invalid_value) for e in errors] == [
        (4, "category_name", "Toolz"),
    ]
