"""Tests for SQLAlchemy ORM schema.

Covers:
- All tables are created
- Schema version is recorded by init_db
- CommitRow round-trip with all fields
- Foreign key constraints on live artifacts and change rows
- init_db is idempotent on an existing database
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError

from tandem.models.commit import ChangeKind, CommitKind
from tandem.models.track import TrackRole
from tandem.storage.engine import SCHEMA_VERSION, create_tandem_engine, init_db
from tandem.storage.schema import (
    ArtifactChangeRow,
    CommitRow,
    LiveArtifactRow,
    TandemMetaRow,
    TrackRow,
)


class TestTableCreation:
    def test_all_tables_exist(self, engine):
        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())
        expected = {
            "blobs",
            "commits",
            "commit_parents",
            "artifact_changes",
            "tracks",
            "environments",
            "live_artifacts",
            "snapshots",
            "snapshot_artifacts",
            "deployment_jobs",
            "job_transitions",
            "drift_records",
            "conflict_sets",
            "conflict_entries",
            "retrofits",
            "events",
            "requests",
            "_tandem_meta",
        }
        assert expected <= table_names, f"Missing tables: {expected - table_names}"

    def test_schema_version_recorded(self, session):
        row = session.execute(
            select(TandemMetaRow).where(TandemMetaRow.key == "schema_version")
        ).scalar_one_or_none()
        assert row is not None
        assert row.value == SCHEMA_VERSION

    def test_init_db_is_idempotent(self, tmp_path):
        path = str(tmp_path / "t.db")
        eng = create_tandem_engine(path)
        init_db(eng)
        with eng.begin() as conn:
            conn.execute(
                TrackRow.__table__.insert().values(
                    name="run", role=TrackRole.RUN, created_at=datetime.now(timezone.utc)
                )
            )
        init_db(eng)
        with eng.connect() as conn:
            assert conn.execute(select(TrackRow.name)).scalars().all() == ["run"]
        eng.dispose()


class TestCommitRow:
    def test_round_trip_all_fields(self, session):
        now = datetime.now(timezone.utc)
        session.add(
            CommitRow(
                commit_hash="a" * 64,
                track="run",
                parent_hash=None,
                kind=CommitKind.MERGE,
                message="Retrofit run into build",
                author="ops",
                metadata_json={"partial_commit": "b" * 64},
                created_at=now,
            )
        )
        session.flush()

        result = session.execute(select(CommitRow).where(CommitRow.commit_hash == "a" * 64)).scalar_one()
        assert result.kind == CommitKind.MERGE
        assert result.author == "ops"
        assert result.metadata_json == {"partial_commit": "b" * 64}


class TestForeignKeys:
    def test_live_artifact_requires_environment(self, session):
        session.add(
            LiveArtifactRow(
                env_id="nowhere", artifact_type="Flow", artifact_name="A", content_hash="0" * 64
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()

    def test_change_row_requires_commit(self, session):
        session.add(
            ArtifactChangeRow(
                commit_hash="f" * 64,
                position=0,
                change_kind=ChangeKind.DELETE,
                artifact_type="Flow",
                artifact_name="A",
                content_hash=None,
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()
