"""CLI tests for Tandem -- drives every command via Click's CliRunner.

Each test uses runner.isolated_filesystem() with a file-backed database
since the CLI opens its own connection (separate from SDK setup).
"""

from __future__ import annotations

import json

import click
import pytest
from click.testing import CliRunner

from tandem import ArtifactChange, SyncConfig, Tandem, TrackRole
from tandem.cli import cli
from tandem.cli.commands.retrofit import parse_resolution

from tests.conftest import flow, modify, seed

DB = "test.db"


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def runner():
    """Create a Click test runner."""
    return CliRunner()


def _open() -> Tandem:
    return Tandem.open(DB, config=SyncConfig(auto_retrofit=False))


def _setup(*, deployed: bool = False) -> None:
    """run -> prod and build -> uat, with Flow:A committed on run."""
    t = _open()
    t.create_environment("prod")
    t.create_environment("uat")
    t.create_track("run", TrackRole.RUN, environment="prod")
    t.create_track("build", TrackRole.BUILD, environment="uat")
    seed(t, "run", flow("A"), message="initial flows")
    if deployed:
        t.request_deployment("run", "prod").raise_for_state()
    t.close()


def _write_changes(path: str, *changes: ArtifactChange) -> None:
    with open(path, "w") as fh:
        json.dump([c.model_dump(mode="json") for c in changes], fh)


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(cli, ["--db", DB, *args])


# ---------------------------------------------------------------------------
# Tracks and environments
# ---------------------------------------------------------------------------


class TestTrackAndEnv:
    def test_create_and_list(self, runner):
        with runner.isolated_filesystem():
            assert _invoke(runner, "env", "create", "prod").exit_code == 0
            result = _invoke(runner, "track", "create", "run", "--role", "RUN", "--env", "prod")
            assert result.exit_code == 0, result.output
            assert "Created track run (run)" in result.output
            result = _invoke(runner, "track", "create", "build", "--role", "build", "--from", "run")
            assert result.exit_code == 0, result.output

            listing = _invoke(runner, "track", "list")
            assert "run" in listing.output and "build" in listing.output
            envs = _invoke(runner, "env", "list")
            assert "prod" in envs.output

    def test_bind(self, runner):
        with runner.isolated_filesystem():
            _setup()
            assert _invoke(runner, "env", "create", "dr").exit_code == 0
            result = _invoke(runner, "env", "bind", "run", "dr")
            assert result.exit_code == 0
            with _open() as t:
                assert t.get_track("run").environment == "dr"

    def test_duplicate_environment_is_an_error(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "env", "create", "prod")
            assert result.exit_code == 1
            assert "Error:" in result.output

    def test_empty_lists(self, runner):
        with runner.isolated_filesystem():
            assert "No tracks." in _invoke(runner, "track", "list").output
            assert "No environments." in _invoke(runner, "env", "list").output


# ---------------------------------------------------------------------------
# Commits and history
# ---------------------------------------------------------------------------


class TestCommitAndLog:
    def test_commit_from_file(self, runner):
        with runner.isolated_filesystem():
            _setup()
            _write_changes("changes.json", ArtifactChange.add(flow("B")))
            result = _invoke(runner, "commit", "run", "changes.json", "-m", "add B")
            assert result.exit_code == 0, result.output
            assert "1 change(s)" in result.output
            with _open() as t:
                assert t.log("run")[0].message == "add B"

    def test_commit_from_stdin(self, runner):
        with runner.isolated_filesystem():
            _setup()
            payload = json.dumps([ArtifactChange.delete("Flow:A").model_dump(mode="json")])
            result = runner.invoke(cli, ["--db", DB, "commit", "run", "-"], input=payload)
            assert result.exit_code == 0, result.output

    def test_invalid_change_list(self, runner):
        with runner.isolated_filesystem():
            _setup()
            _write_changes("changes.json", ArtifactChange.modify(flow("Missing")))
            result = _invoke(runner, "commit", "run", "changes.json")
            assert result.exit_code == 1
            assert "Error:" in result.output

    def test_log(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "log", "run")
            assert result.exit_code == 0
            assert "initial flows" in result.output
            assert "normal" in result.output

    def test_log_unknown_track(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "log", "nope")
            assert result.exit_code == 1
            assert "Error:" in result.output


# ---------------------------------------------------------------------------
# Retrofit and conflicts
# ---------------------------------------------------------------------------


class TestRetrofit:
    def test_clean_retrofit(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "retrofit", "run", "build")
            assert result.exit_code == 0, result.output
            assert "Merged 'run' into 'build'" in result.output
            again = _invoke(runner, "retrofit", "run", "build")
            assert "is up to date" in again.output

    def test_conflict_then_resolve(self, runner):
        with runner.isolated_filesystem():
            _setup()
            with _open() as t:
                t.request_retrofit("run", "build")
                modify(t, "run", flow("A", label="hotfix"))
                modify(t, "build", flow("A", label="feature"))

            result = _invoke(runner, "retrofit", "run", "build", "--policy", "atomic")
            assert result.exit_code == 0, result.output
            assert "Conflict" in result.output

            listing = _invoke(runner, "conflicts")
            assert "run -> build" in listing.output
            with _open() as t:
                cs_id = t.list_conflict_sets(status="open")[0].conflict_set_id

            resolved = _invoke(runner, "resolve", cs_id, "Flow:A=theirs")
            assert resolved.exit_code == 0, resolved.output
            assert "Merged" in resolved.output
            with _open() as t:
                assert t.state_at("build")[flow("A").key] == flow("A", label="hotfix")
            assert "No conflict sets." in _invoke(runner, "conflicts").output
            assert "resolved" in _invoke(runner, "conflicts", "--all").output

    def test_resolve_with_custom_file(self, runner):
        with runner.isolated_filesystem():
            _setup()
            with _open() as t:
                t.request_retrofit("run", "build")
                modify(t, "run", flow("A", label="hotfix"))
                modify(t, "build", flow("A", label="feature"))
                cs_id = t.request_retrofit("run", "build").conflict_set.conflict_set_id
            with open("merged.json", "w") as fh:
                fh.write(flow("A", label="both").model_dump_json())
            result = _invoke(runner, "resolve", cs_id, "Flow:A=@merged.json")
            assert result.exit_code == 0, result.output
            with _open() as t:
                assert t.state_at("build")[flow("A").key] == flow("A", label="both")


class TestParseResolution:
    def test_choices(self):
        assert parse_resolution("Flow:A=ours")[1].choice == "ours"
        key, res = parse_resolution("Flow:A=delete")
        assert key == "Flow:A"
        assert res.artifact is None

    def test_key_may_contain_equals(self):
        assert parse_resolution("Flow:a=b=theirs")[0] == "Flow:a=b"

    def test_malformed(self):
        with pytest.raises(click.BadParameter):
            parse_resolution("Flow:A")
        with pytest.raises(click.BadParameter):
            parse_resolution("Flow:A=maybe")


# ---------------------------------------------------------------------------
# Deployment, drift and lag
# ---------------------------------------------------------------------------


class TestDeploy:
    def test_deploy_and_list_jobs(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "deploy", "run", "prod")
            assert result.exit_code == 0, result.output
            assert "deployed" in result.output
            jobs = _invoke(runner, "jobs", "--env", "prod")
            assert "deployed" in jobs.output

    def test_failed_validation_exits_nonzero(self, runner):
        with runner.isolated_filesystem():
            _setup(deployed=True)
            with _open() as t:
                t.edit_live("prod", flow("A", label="hand edit"))
                modify(t, "run", flow("A", label="v2"))
            result = _invoke(runner, "deploy", "run", "prod")
            assert result.exit_code == 1
            assert "validation_failed" in result.output
            assert "Error:" in result.output

            forced = _invoke(runner, "deploy", "run", "prod", "--overwrite-drift")
            assert forced.exit_code == 0, forced.output

    def test_cancel_and_recover(self, runner):
        with runner.isolated_filesystem():
            _setup()
            with _open() as t:
                job_id = t._deployer.request("run", "prod").job_id
            result = _invoke(runner, "jobs", "--recover")
            assert "Recovered 1 interrupted job(s)" in result.output
            assert "cancelled" in result.output

            again = _invoke(runner, "cancel", job_id)
            assert again.exit_code == 1
            assert "Error:" in again.output

    def test_clear_quarantine(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "env", "clear-quarantine", "prod")
            assert result.exit_code == 0
            assert "Quarantine cleared" in result.output


class TestDriftAndLag:
    def test_scan_and_absorb(self, runner):
        with runner.isolated_filesystem():
            _setup(deployed=True)
            assert "No drift on prod." in _invoke(runner, "scan", "prod").output
            with _open() as t:
                t.edit_live("prod", flow("A", label="hand edit"))
            scan = _invoke(runner, "scan", "prod")
            assert "Flow:A" in scan.output and "modified" in scan.output

            absorbed = _invoke(runner, "env", "absorb", "prod", "-m", "keep hand edit")
            assert absorbed.exit_code == 0, absorbed.output
            assert "Absorbed 1 artifact(s) into run" in absorbed.output
            assert "Nothing to absorb." in _invoke(runner, "env", "absorb", "prod").output

    def test_lag(self, runner):
        with runner.isolated_filesystem():
            _setup()
            result = _invoke(runner, "lag")
            assert result.exit_code == 0
            assert "No retrofit lag." in result.output


class TestConfigOption:
    def test_config_file_supplies_database_and_bindings(self, runner):
        with runner.isolated_filesystem():
            with open("tandem.toml", "w") as fh:
                fh.write(
                    'db_path = "from-config.db"\n\n'
                    '[[tracks]]\nname = "run"\nrole = "run"\nenvironment = "prod"\n'
                )
            result = runner.invoke(cli, ["--config", "tandem.toml", "track", "list"])
            assert result.exit_code == 0, result.output
            assert "run" in result.output
            with Tandem.open("from-config.db") as t:
                assert [e.env_id for e in t.list_environments()] == ["prod"]

    def test_default_database(self, runner):
        with runner.isolated_filesystem():
            assert runner.invoke(cli, ["env", "create", "prod"]).exit_code == 0
            with Tandem.open(".tandem.db") as t:
                assert [e.env_id for e in t.list_environments()] == ["prod"]
