"""Deployment orchestration: validate, apply and roll back a commit.

Every job walks the ``VALID_TRANSITIONS`` table of
:mod:`tandem.models.deployment`; each edge is persisted as a
JobTransitionRow and emitted as a DeploymentStateChanged event.

Each step runs in its own short unit of work; target adapters are called
between units of work so that a slow target never holds the store lock.
An environment admits one non-terminal job at a time: the in-process
``env:<id>`` lock fails fast, and the durable job table rejects a second
active job even across restarts.  The lock is released when the job
reaches a terminal state.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from tandem.engine.structure import artifacts_equal, diff_states
from tandem.exceptions import (
    CommitNotFoundError,
    EnvironmentNotFoundError,
    EnvironmentQuarantinedError,
    InvalidTransitionError,
    JobInProgressError,
    JobNotCancellableError,
    JobNotFoundError,
    TrackNotFoundError,
    operation_context,
)
from tandem.models.artifact import ArtifactKey
from tandem.models.deployment import (
    CANCELLABLE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DeploymentJob,
    JobState,
    JobTransition,
)
from tandem.models.drift import DriftResolution
from tandem.models.events import DeploymentStateChanged
from tandem.operations.drift import close_drift
from tandem.operations.expand import expand
from tandem.operations.locks import env_lock
from tandem.storage.schema import DeploymentJobRow, JobTransitionRow
from tandem.storage.sqlite import as_utc

if TYPE_CHECKING:
    from tandem.engine.structure import State
    from tandem.models.commit import ArtifactChange
    from tandem.models.config import SyncConfig
    from tandem.operations.graph import CommitGraph
    from tandem.operations.locks import LockRegistry
    from tandem.operations.outbox import EventBus
    from tandem.protocols import TargetAdapter
    from tandem.storage.sqlite import Repositories
    from tandem.storage.store import Store

logger = logging.getLogger(__name__)


def row_to_job(repos: Repositories, row: DeploymentJobRow) -> DeploymentJob:
    return DeploymentJob(
        job_id=row.job_id,
        env_id=row.env_id,
        track=row.track,
        commit_hash=row.commit_hash,
        state=row.state,
        snapshot_id=row.snapshot_id,
        overwrite_drift=row.overwrite_drift,
        planned_keys=[ArtifactKey.parse(k) for k in row.planned_json or []],
        error=row.error,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        transitions=[
            JobTransition(
                from_state=t.from_state,
                to_state=t.to_state,
                at=as_utc(t.created_at),
                detail=t.detail,
            )
            for t in repos.jobs.get_transitions(row.job_id)
        ],
    )


def find_dangling(post_state: State, planned: set[ArtifactKey]) -> list[str]:
    """References broken by applying the plan.

    Checks references out of every planned artifact, and references from
    any artifact into a planned artifact that the plan removes.
    """
    problems: list[str] = []
    for key in sorted(post_state):
        for target in sorted(post_state[key].references()):
            if target in post_state:
                continue
            if key in planned or target in planned:
                problems.append(f"{key} references missing artifact {target}")
    return problems


class DeploymentOrchestrator:
    """Runs deployment jobs through the state machine."""

    def __init__(
        self,
        store: Store,
        locks: LockRegistry,
        bus: EventBus,
        config: SyncConfig,
        *,
        graph_for: Callable[[Repositories], CommitGraph],
        adapter_for: Callable[[str], TargetAdapter],
    ) -> None:
        self._store = store
        self._locks = locks
        self._bus = bus
        self._config = config
        self._graph_for = graph_for
        self._adapter_for = adapter_for

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        repos: Repositories,
        row: DeploymentJobRow,
        to_state: JobState,
        detail: str | None = None,
    ) -> None:
        from_state = row.state
        if to_state not in VALID_TRANSITIONS.get(from_state, set()):
            raise InvalidTransitionError(row.job_id, from_state.value, to_state.value)
        now = datetime.now(timezone.utc)
        row.state = to_state
        row.updated_at = now
        repos.jobs.add_transition(
            JobTransitionRow(
                job_id=row.job_id,
                from_state=from_state,
                to_state=to_state,
                detail=detail,
                created_at=now,
            )
        )
        self._bus.emit(
            repos,
            DeploymentStateChanged(
                job_id=row.job_id,
                env_id=row.env_id,
                from_state=from_state.value,
                to_state=to_state.value,
                detail=detail,
            ),
        )
        level = logging.ERROR if to_state == JobState.ROLLBACK_FAILED else logging.INFO
        logger.log(
            level, "Job %s on %s: %s -> %s", row.job_id[:12], row.env_id, from_state, to_state
        )
        if to_state.is_terminal:
            env_id, job_id = row.env_id, row.job_id
            repos.on_commit(lambda: self._locks.release_env(env_id, job_id))

    def _step(
        self,
        job_id: str,
        to_state: JobState,
        detail: str | None = None,
        **updates: object,
    ) -> bool:
        """Move a job one edge forward in its own unit of work.

        Honors a pending cancellation instead of entering VALIDATING,
        VALIDATED or DEPLOYING.  Returns False when the job did not take
        the edge (cancelled now or earlier).
        """
        with self._store.unit_of_work() as repos:
            row = self._row(repos, job_id)
            if row.state.is_terminal:
                return False
            if (
                row.cancel_requested
                and row.state in CANCELLABLE_STATES
                and to_state in (JobState.VALIDATING, JobState.VALIDATED, JobState.DEPLOYING)
            ):
                self._transition(repos, row, JobState.CANCELLED, "cancelled on request")
                return False
            for name, value in updates.items():
                setattr(row, name, value)
            self._transition(repos, row, to_state, detail)
            return True

    def _row(self, repos: Repositories, job_id: str) -> DeploymentJobRow:
        row = repos.jobs.get(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def get(self, job_id: str) -> DeploymentJob:
        with self._store.unit_of_work() as repos:
            return row_to_job(repos, self._row(repos, job_id))

    # ------------------------------------------------------------------
    # Request / run
    # ------------------------------------------------------------------

    def request(self, track: str, env_id: str, *, overwrite_drift: bool = False) -> DeploymentJob:
        """Create a PENDING job for the head of ``track`` on ``env_id``.

        Raises:
            JobInProgressError: The environment has an active job.
            EnvironmentQuarantinedError: A rollback failed on it earlier.
        """
        job_id = uuid.uuid4().hex
        self._locks.acquire_env(env_id, job_id)
        try:
            with self._store.unit_of_work() as repos:
                env = repos.environments.get(env_id)
                if env is None:
                    raise EnvironmentNotFoundError(env_id)
                if env.quarantined:
                    raise EnvironmentQuarantinedError(env_id, env.quarantine_reason)
                active = repos.jobs.get_active(env_id)
                if active is not None:
                    raise JobInProgressError(env_id, active.job_id)
                track_row = repos.tracks.get(track)
                if track_row is None:
                    raise TrackNotFoundError(track)
                if track_row.head_hash is None:
                    raise CommitNotFoundError(f"{track}@HEAD")
                now = datetime.now(timezone.utc)
                row = DeploymentJobRow(
                    job_id=job_id,
                    env_id=env_id,
                    track=track,
                    commit_hash=track_row.head_hash,
                    state=JobState.PENDING,
                    overwrite_drift=overwrite_drift,
                    cancel_requested=False,
                    created_at=now,
                    updated_at=now,
                )
                repos.jobs.save(row)
                repos.jobs.add_transition(
                    JobTransitionRow(
                        job_id=job_id,
                        from_state=None,
                        to_state=JobState.PENDING,
                        detail=f"deploy {track}@{track_row.head_hash[:12]}",
                        created_at=now,
                    )
                )
                self._bus.emit(
                    repos,
                    DeploymentStateChanged(
                        job_id=job_id, env_id=env_id, to_state=JobState.PENDING.value
                    ),
                )
                logger.info(
                    "Job %s requested: %s@%s -> %s",
                    job_id[:12],
                    track,
                    track_row.head_hash[:12],
                    env_id,
                )
                return row_to_job(repos, row)
        except BaseException:
            self._locks.release_env(env_id, job_id)
            raise

    def run(self, job_id: str) -> DeploymentJob:
        """Drive a PENDING job to a terminal state and return it."""
        job = self.get(job_id)
        with operation_context(
            "deploy", job_id=job_id, environment=job.env_id, commit=job.commit_hash
        ):
            try:
                changes = self._validate(job)
                if changes is not None:
                    self._deploy(job, changes)
            except BaseException as exc:
                logger.exception("Job %s aborted unexpectedly", job_id[:12])
                final = self.get(job_id)
                if not final.is_terminal:
                    self._abandon(final, exc)
                raise
        return self.get(job_id)

    def _validate(self, job: DeploymentJob) -> list[ArtifactChange] | None:
        """PENDING -> VALIDATING -> VALIDATED.  Returns the changes to apply,
        or None if the job ended (failed validation or cancelled)."""
        if not self._step(job.job_id, JobState.VALIDATING):
            return None
        adapter = self._adapter_for(job.env_id)
        try:
            with self._store.unit_of_work() as repos:
                graph = self._graph_for(repos)
                env = repos.environments.get(job.env_id)
                last_applied = env.last_applied_commit if env else None
                target_state = graph.materialize(job.commit_hash)
                base_state = graph.materialize(last_applied)
            live = adapter.read(job.env_id)
            planned, changes, problems = self.plan(
                target_state, base_state, live, overwrite_drift=job.overwrite_drift
            )
            if not problems:
                problems = list(adapter.validate(job.env_id, changes, target_state))
        except Exception as exc:
            logger.exception("Validation of job %s raised", job.job_id[:12])
            problems = [f"{type(exc).__name__}: {exc}"]
            planned = []
            changes = []

        planned_json = [str(k) for k in planned]
        if problems:
            error = "; ".join(problems)
            with self._store.unit_of_work() as repos:
                row = self._row(repos, job.job_id)
                if row.state.is_terminal:
                    return None
                row.error = error
                row.planned_json = planned_json
                self._transition(repos, row, JobState.VALIDATION_FAILED, error)
            logger.warning("Job %s failed validation: %s", job.job_id[:12], error)
            return None
        if not self._step(
            job.job_id,
            JobState.VALIDATED,
            f"{len(changes)} change(s) planned",
            planned_json=planned_json,
        ):
            return None
        return changes

    def plan(
        self,
        target_state: State,
        base_state: State,
        live: State,
        *,
        overwrite_drift: bool = False,
    ) -> tuple[list[ArtifactKey], list[ArtifactChange], list[str]]:
        """Dry run: planned keys, adapter changes relative to live, problems."""
        seeds = [c.key for c in diff_states(base_state, target_state)]
        expansion = expand(
            seeds,
            target_state,
            live,
            max_hops=self._config.max_expansion_hops,
            excluded_types=set(self._config.excluded_types),
            base_state=base_state,
        )
        planned = expansion.keys
        keys = set(planned)
        changes = diff_states(
            {k: a for k, a in live.items() if k in keys},
            {k: a for k, a in target_state.items() if k in keys},
        )

        problems: list[str] = []
        if not overwrite_drift:
            for key in planned:
                in_live = live.get(key)
                if not artifacts_equal(in_live, base_state.get(key)) and not artifacts_equal(
                    in_live, target_state.get(key)
                ):
                    problems.append(
                        f"{key} has drifted from the last applied commit "
                        f"(absorb it or deploy with overwrite_drift)"
                    )

        post = dict(live)
        for change in changes:
            if change.artifact is None:
                post.pop(change.key, None)
            else:
                post[change.key] = change.artifact
        problems.extend(find_dangling(post, keys))
        return planned, changes, problems

    def _deploy(self, job: DeploymentJob, changes: list[ArtifactChange]) -> None:
        """VALIDATED -> DEPLOYING -> DEPLOYED, or the rollback path."""
        if not self._step(job.job_id, JobState.DEPLOYING):
            return
        adapter = self._adapter_for(job.env_id)
        snapshot: State | None = None
        try:
            snapshot = adapter.read(job.env_id)
            self._save_snapshot(job, snapshot)
            adapter.apply(job.env_id, changes)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.error("Job %s failed to apply: %s", job.job_id[:12], reason)
            self._step(job.job_id, JobState.DEPLOY_FAILED, reason, error=reason)
            self._rollback(job.job_id, job.env_id, snapshot, applied=snapshot is not None)
            return

        with self._store.unit_of_work() as repos:
            row = self._row(repos, job.job_id)
            env = repos.environments.get(job.env_id)
            env.last_applied_commit = job.commit_hash
            close_drift(
                repos,
                job.env_id,
                [c.key for c in changes],
                DriftResolution.OVERWRITTEN,
            )
            self._transition(repos, row, JobState.DEPLOYED, f"{len(changes)} change(s) applied")

    def _save_snapshot(self, job: DeploymentJob, live: State) -> None:
        with self._store.unit_of_work() as repos:
            snapshot_id = uuid.uuid4().hex
            repos.snapshots.create(
                snapshot_id,
                job.env_id,
                job.job_id,
                {key: repos.blobs.put(a) for key, a in live.items()},
                datetime.now(timezone.utc),
            )
            self._row(repos, job.job_id).snapshot_id = snapshot_id
            repos.session.flush()
        logger.debug("Snapshot %s of %s: %d artifacts", snapshot_id[:12], job.env_id, len(live))

    def _load_snapshot(self, snapshot_id: str | None) -> State | None:
        if snapshot_id is None:
            return None
        with self._store.unit_of_work() as repos:
            entries = repos.snapshots.get_entries(snapshot_id)
            if entries is None:
                return None
            return {key: repos.blobs.get(c_hash) for key, c_hash in entries.items()}

    def _rollback(
        self,
        job_id: str,
        env_id: str,
        snapshot: State | None,
        *,
        applied: bool = True,
    ) -> None:
        """DEPLOY_FAILED -> ROLLING_BACK -> ROLLED_BACK | ROLLBACK_FAILED."""
        self._step(job_id, JobState.ROLLING_BACK)
        if not applied:
            self._step(job_id, JobState.ROLLED_BACK, "no changes were applied")
            return
        self._restore(job_id, env_id, snapshot)

    def _restore(
        self, job_id: str, env_id: str, snapshot: State | None, note: str = ""
    ) -> None:
        """The single restore attempt of a ROLLING_BACK job.

        A failed restore quarantines the environment.
        """
        try:
            if snapshot is None:
                raise RuntimeError("pre-deploy snapshot is missing")
            self._adapter_for(env_id).restore(env_id, snapshot)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.error("Rollback of job %s on %s failed: %s", job_id[:12], env_id, reason)
            with self._store.unit_of_work() as repos:
                row = self._row(repos, job_id)
                row.error = f"{row.error}; rollback: {reason}" if row.error else reason
                env = repos.environments.get(env_id)
                env.quarantined = True
                env.quarantine_reason = f"rollback of job {job_id} failed: {reason}"
                self._transition(repos, row, JobState.ROLLBACK_FAILED, reason)
            logger.error("Environment %s quarantined", env_id)
            return
        detail = "pre-deploy snapshot restored"
        self._step(job_id, JobState.ROLLED_BACK, f"{detail} {note}".strip())

    # ------------------------------------------------------------------
    # Cancellation and recovery
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> DeploymentJob:
        """Cancel a job that has not started mutating its target.

        PENDING and VALIDATED jobs are cancelled at once; a VALIDATING job
        is flagged and stops at its next checkpoint.

        Raises:
            JobNotCancellableError: The job is deploying or terminal.
        """
        with self._store.unit_of_work() as repos:
            row = self._row(repos, job_id)
            if row.state not in CANCELLABLE_STATES:
                raise JobNotCancellableError(job_id, row.state.value)
            row.cancel_requested = True
            if row.state in (JobState.PENDING, JobState.VALIDATED):
                self._transition(repos, row, JobState.CANCELLED, "cancelled on request")
            else:
                logger.info("Job %s flagged for cancellation", job_id[:12])
            repos.session.flush()
            return row_to_job(repos, row)

    def recover(self) -> list[DeploymentJob]:
        """Settle jobs left non-terminal by a previous process.

        Jobs that never mutated their target are cancelled; jobs that may
        have are rolled back once from their stored snapshot.
        """
        with self._store.unit_of_work() as repos:
            stale = [
                (row.job_id, row.env_id, row.state, row.snapshot_id)
                for row in repos.jobs.list(states=set(JobState) - TERMINAL_STATES)
            ]
        recovered: list[DeploymentJob] = []
        for job_id, env_id, state, snapshot_id in stale:
            if not self._locks.try_acquire(env_lock(env_id), job_id):
                logger.info("Skipping recovery of job %s: %s is busy", job_id[:12], env_id)
                continue
            logger.warning("Recovering interrupted job %s (%s) on %s", job_id[:12], state, env_id)
            self._settle(job_id, env_id, state, snapshot_id, "interrupted", "after restart")
            recovered.append(self.get(job_id))
        return recovered

    def _settle(
        self,
        job_id: str,
        env_id: str,
        state: JobState,
        snapshot_id: str | None,
        reason: str,
        note: str,
    ) -> None:
        """Bring a job stopped in ``state`` to a terminal state.

        The caller holds the environment lock for ``job_id``.
        """
        if state in CANCELLABLE_STATES:
            with self._store.unit_of_work() as repos:
                row = self._row(repos, job_id)
                self._transition(repos, row, JobState.CANCELLED, reason)
            return
        if state == JobState.DEPLOYING:
            self._step(job_id, JobState.DEPLOY_FAILED, reason, error=reason)
        snapshot = self._load_snapshot(snapshot_id)
        if state == JobState.ROLLING_BACK:
            self._restore(job_id, env_id, snapshot, note)
        else:
            self._rollback(job_id, env_id, snapshot, applied=snapshot_id is not None)

    def _abandon(self, job: DeploymentJob, exc: BaseException) -> None:
        """Settle a job whose run raised, or leave it for :meth:`recover`."""
        if isinstance(exc, Exception):
            reason = f"aborted: {type(exc).__name__}: {exc}"
            try:
                self._settle(
                    job.job_id, job.env_id, job.state, job.snapshot_id, reason, "after abort"
                )
                return
            except Exception:
                logger.exception("Could not settle aborted job %s", job.job_id[:12])
        logger.error(
            "Job %s left %s on %s; recover_interrupted_jobs() will settle it",
            job.job_id[:12],
            job.state.value,
            job.env_id,
        )
        self._locks.release_env(job.env_id, job.job_id)
