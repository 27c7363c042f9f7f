import uuid
from datetime import datetime

import pytest
from sqlalchemy import create_engine, event, inspect, select

from tempus.domain import JobMetadataStatus, JobType
from tempus.schema import (
    downgrade,
    entity_from_rows,
    job_metadata_table,
    job_table,
    main,
    upgrade,
)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://")

    @event.listens_for(eng, "connect")
    def _enable_fk(dbapi_conn, _record):
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    upgrade(eng)
    yield eng
    eng.dispose()


def _insert_job(conn, job_id, **extra):
    conn.execute(
        job_table.insert().values(
            id=job_id,
            time=datetime(2024, 5, 1, 10, 30),
            target="https://example.com/hook",
            payload={"k": [1, 2]},
            type=JobType.HTTP,
            **extra,
        )
    )


def test_upgrade_creates_tables(engine):
    names = set(inspect(engine).get_table_names())
    assert names == {"job", "job_metadata"}


def test_upgrade_is_idempotent(engine):
    upgrade(engine)
    assert set(inspect(engine).get_table_names()) == {"job", "job_metadata"}


def test_retries_defaults_to_zero_and_timestamps_set(engine):
    job_id = uuid.uuid4()
    with engine.begin() as conn:
        _insert_job(conn, job_id)
        row = conn.execute(select(job_table).where(job_table.c.id == job_id)).one()
    assert row.retries == 0
    assert row.created_at is not None and row.updated_at is not None


def test_entity_from_rows_round_trip(engine):
    job_id = uuid.uuid4()
    processed = datetime(2024, 5, 1, 11, 0)
    with engine.begin() as conn:
        _insert_job(conn, job_id, retries=2)
        conn.execute(
            job_metadata_table.insert().values(
                job_id=job_id,
                status=JobMetadataStatus.FAILED,
                failure="boom",
                processed_at=processed,
            )
        )
        job_row = conn.execute(select(job_table)).one()
        meta_row = conn.execute(select(job_metadata_table)).one()

    entity = entity_from_rows(job_row, meta_row)
    assert entity.id == job_id
    assert entity.time == datetime(2024, 5, 1, 10, 30)
    assert entity.target == "https://example.com/hook"
    assert entity.retries == 2
    assert entity.type is JobType.HTTP
    assert entity.payload == {"k": [1, 2]}
    assert entity.metadata.job_id == job_id
    assert entity.metadata.status is JobMetadataStatus.FAILED
    assert entity.metadata.failure == "boom"
    assert entity.metadata.processed_at == processed


def test_outer_join_without_metadata_gives_none(engine):
    job_id = uuid.uuid4()
    with engine.begin() as conn:
        _insert_job(conn, job_id)
        row = conn.execute(
            select(job_table, job_metadata_table).select_from(
                job_table.outerjoin(job_metadata_table)
            )
        ).one()
    entity = entity_from_rows(row, row)
    assert entity.metadata is None
    assert entity.id == job_id


def test_entity_from_plain_mappings():
    job_id = uuid.uuid4()
    entity = entity_from_rows(
        {
            "id": job_id,
            "time": datetime(2024, 1, 1),
            "target": "orders",
            "retries": 0,
            "type": "kafka",
            "payload": None,
        },
        {"job_id": job_id, "status": "scheduled", "failure": None, "processed_at": None},
    )
    assert entity.type is JobType.KAFKA
    assert entity.metadata.status is JobMetadataStatus.SCHEDULED


def test_deleting_job_cascades_to_metadata(engine):
    job_id = uuid.uuid4()
    with engine.begin() as conn:
        _insert_job(conn, job_id)
        conn.execute(
            job_metadata_table.insert().values(job_id=job_id, status=JobMetadataStatus.SCHEDULED)
        )
        conn.execute(job_table.delete().where(job_table.c.id == job_id))
        remaining = conn.execute(select(job_metadata_table)).all()
    assert remaining == []


def test_metadata_requires_existing_job(engine):
    from sqlalchemy.exc import IntegrityError

    with pytest.raises(IntegrityError):
        with engine.begin() as conn:
            conn.execute(
                job_metadata_table.insert().values(
                    job_id=uuid.uuid4(), status=JobMetadataStatus.SCHEDULED
                )
            )


def test_downgrade_drops_tables(engine):
    downgrade(engine)
    assert inspect(engine).get_table_names() == []


def test_main_up_status_down(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    url = f"sqlite:///{tmp_path / 'm.db'}"

    assert main(["-u", url, "up"]) == 0
    check = create_engine(url)
    assert set(inspect(check).get_table_names()) == {"job", "job_metadata"}
    check.dispose()

    assert main(["-u", url, "status"]) == 0
    assert "applied" in capsys.readouterr().out

    assert main(["-u", url, "down"]) == 0
    assert main(["-u", url, "status"]) == 0
    assert "pending" in capsys.readouterr().out


def test_main_without_url_fails(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert main(["up"]) == 1


def test_main_rejects_unknown_command(tmp_path):
    with pytest.raises(SystemExit):
        main(["-u", f"sqlite:///{tmp_path / 'x.db'}", "explode"])