"""Tandem facade -- the primary public API.

Keeps two long-lived tracks and their deployment targets reconciled.
Users interact with ``Tandem.open()``, ``t.submit_commit()``,
``t.request_retrofit()``, ``t.request_deployment()`` and
``t.request_drift_scan()``.

Example::

    with Tandem.open("tandem.db") as t:
        t.create_environment("prod")
        t.create_track("run", TrackRole.RUN, environment="prod")
        t.submit_commit("run", [ArtifactChange.add(artifact)])
        job = t.request_deployment("run", "prod")
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from tandem.exceptions import (
    DriftAbsorbError,
    EnvironmentExistsError,
    EnvironmentNotFoundError,
    RequestIdConflictError,
    StaleConflictSetError,
    TrackLockedError,
    TrackNotFoundError,
    operation_context,
)
from tandem.models.artifact import Artifact, ArtifactKey
from tandem.models.commit import ArtifactChange, ChangeKind, CommitInfo
from tandem.models.config import SyncConfig
from tandem.models.deployment import DeploymentJob, JobState
from tandem.models.drift import DriftRecord, DriftResolution, DriftScanResult
from tandem.models.events import DriftDetected, Event, RetrofitLagExceeded
from tandem.models.merge import ConflictSet, ConflictSetStatus, MergePolicy, MergeResult, Resolution
from tandem.models.track import EnvironmentInfo, TrackInfo, TrackRole
from tandem.operations.dag import get_unmerged_commits
from tandem.operations.deploy import DeploymentOrchestrator, row_to_job
from tandem.operations.drift import absorb_changes, close_drift, row_to_record, scan_environment
from tandem.operations.graph import CommitGraph, StateCache, row_to_track
from tandem.operations.locks import LockRegistry, track_lock
from tandem.operations.outbox import EventBus, load_event
from tandem.operations.retrofit import (
    load_conflict_set,
    load_retrofit,
    resolve_conflict,
    retrofit,
    row_to_conflict_set,
    supersede_if_stale,
)
from tandem.protocols import NotificationSink, TargetAdapter
from tandem.storage.schema import EnvironmentRow, RequestRow
from tandem.storage.sqlite import as_utc
from tandem.storage.store import Store
from tandem.targets import DatabaseTarget

if TYPE_CHECKING:
    from tandem.engine.structure import State
    from tandem.storage.sqlite import Repositories

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)


class Tandem:
    """Environment synchronization and drift reconciliation engine.

    Owns the storage engine and every component.  Use :meth:`open` to
    create an instance; do not call ``__init__`` directly.
    """

    def __init__(self, store: Store, config: SyncConfig) -> None:
        self._store = store
        self._config = config
        self._locks = LockRegistry()
        self._bus = EventBus()
        self._cache = StateCache(maxsize=config.state_cache_size)
        self._default_target = DatabaseTarget(store)
        self._targets: dict[str, TargetAdapter] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future[DeploymentJob]] = {}
        self._closed = False
        self._deployer = DeploymentOrchestrator(
            store,
            self._locks,
            self._bus,
            config,
            graph_for=self._graph,
            adapter_for=self.target_for,
        )

    @classmethod
    def open(
        cls,
        path: str | None = None,
        *,
        config: SyncConfig | None = None,
        url: str | None = None,
    ) -> Tandem:
        """Open (or create) a Tandem database.

        Args:
            path: SQLite path.  Overrides ``config.db_path`` when given;
                ``":memory:"`` by default.
            config: Engine configuration.  Track bindings are applied:
                missing environments and tracks are created.
            url: Any SQLAlchemy URL, overriding *path*.

        Returns:
            A ready-to-use ``Tandem`` instance.
        """
        config = config or SyncConfig()
        if path is not None:
            config = config.model_copy(update={"db_path": path})
        store = Store.open(config.db_path, url=url or config.db_url)
        tandem = cls(store, config)
        tandem._apply_bindings()
        logger.info("Opened tandem database %s", url or config.db_url or config.db_path)
        return tandem

    @property
    def config(self) -> SyncConfig:
        return self._config

    def _graph(self, repos: Repositories) -> CommitGraph:
        return CommitGraph(repos, self._cache)

    def _apply_bindings(self) -> None:
        with self._store.unit_of_work() as repos:
            graph = self._graph(repos)
            for binding in self._config.tracks:
                if binding.environment and repos.environments.get(binding.environment) is None:
                    self._new_environment(repos, binding.environment)
                row = repos.tracks.get(binding.name)
                if row is None:
                    graph.create_track(
                        binding.name,
                        binding.role,
                        from_track=binding.from_track,
                        environment=binding.environment,
                    )
                elif binding.environment and row.environment != binding.environment:
                    row.environment = binding.environment
                    logger.info("Bound track '%s' to %s", binding.name, binding.environment)

    def _idempotent(
        self,
        request_id: str | None,
        command: str,
        fn: Callable[[], _M],
        load: Callable[[str], _M],
    ) -> _M:
        """Run ``fn`` once per client request id.

        A retried request returns the stored result; reusing an id for a
        different command raises RequestIdConflictError.  Attempts with the
        same id are serialized, so a concurrent retry waits for the first
        one and replays its result.
        """
        if request_id is None:
            return fn()
        with self._locks.hold_request(request_id):
            stored = self._stored_result(request_id, command)
            if stored is not None:
                logger.info("Replaying %s for request %s", command, request_id)
                return load(stored)
            result = fn()
            try:
                with self._store.unit_of_work() as repos:
                    repos.requests.save(
                        RequestRow(
                            request_id=request_id,
                            command=command,
                            result_json=result.model_dump_json(),
                            created_at=datetime.now(timezone.utc),
                        )
                    )
            except IntegrityError:
                # Another process recorded the same request first.
                stored = self._stored_result(request_id, command)
                if stored is None:
                    raise
                logger.warning(
                    "Request %s was completed by another process; replaying its result",
                    request_id,
                )
                return load(stored)
            return result

    def _stored_result(self, request_id: str, command: str) -> str | None:
        with self._store.unit_of_work() as repos:
            row = repos.requests.get(request_id)
            if row is None:
                return None
            if row.command != command:
                raise RequestIdConflictError(request_id, command, row.command)
            return row.result_json

    # ------------------------------------------------------------------
    # Tracks and environments
    # ------------------------------------------------------------------

    def create_track(
        self,
        name: str,
        role: TrackRole | str,
        *,
        from_track: str | None = None,
        environment: str | None = None,
    ) -> TrackInfo:
        """Create a track, empty or forked at ``from_track``'s head."""
        with operation_context("create_track", track=name):
            with self._store.unit_of_work() as repos:
                if environment is not None and repos.environments.get(environment) is None:
                    raise EnvironmentNotFoundError(environment)
                return self._graph(repos).create_track(
                    name, TrackRole(role), from_track=from_track, environment=environment
                )

    def get_track(self, name: str) -> TrackInfo:
        with self._store.unit_of_work() as repos:
            return self._graph(repos).get_track(name)

    def list_tracks(self) -> list[TrackInfo]:
        with self._store.unit_of_work() as repos:
            return [row_to_track(r) for r in repos.tracks.list()]

    def _new_environment(self, repos: Repositories, env_id: str) -> EnvironmentRow:
        row = EnvironmentRow(
            env_id=env_id,
            quarantined=False,
            created_at=datetime.now(timezone.utc),
        )
        repos.environments.save(row)
        logger.info("Created environment %s", env_id)
        return row

    def create_environment(
        self,
        env_id: str,
        *,
        track: str | None = None,
        initial: list[Artifact] | None = None,
    ) -> EnvironmentInfo:
        """Register a deployment target.

        Args:
            env_id: Environment id.
            track: Optional track to bind to it.
            initial: Artifacts already live on the target.  They are
                reported as drift until absorbed or overwritten.
        """
        with operation_context("create_environment", environment=env_id, track=track):
            with self._store.unit_of_work() as repos:
                if repos.environments.get(env_id) is not None:
                    raise EnvironmentExistsError(env_id)
                self._new_environment(repos, env_id)
                if track is not None:
                    self._bind(repos, track, env_id)
            if initial:
                self.target_for(env_id).apply(
                    env_id, [ArtifactChange.add(a) for a in initial]
                )
            return self.get_environment(env_id)

    def _bind(self, repos: Repositories, track: str, env_id: str) -> None:
        row = repos.tracks.get(track)
        if row is None:
            raise TrackNotFoundError(track)
        if repos.environments.get(env_id) is None:
            raise EnvironmentNotFoundError(env_id)
        row.environment = env_id
        repos.session.flush()
        logger.info("Bound track '%s' to %s", track, env_id)

    def bind(self, track: str, environment: str) -> TrackInfo:
        """Bind ``track`` to deploy into ``environment``."""
        with operation_context("bind", track=track, environment=environment):
            with self._store.unit_of_work() as repos:
                self._bind(repos, track, environment)
                return self._graph(repos).get_track(track)

    def _env_row(self, repos: Repositories, env_id: str) -> EnvironmentRow:
        row = repos.environments.get(env_id)
        if row is None:
            raise EnvironmentNotFoundError(env_id)
        return row

    def _env_info(self, repos: Repositories, row: EnvironmentRow) -> EnvironmentInfo:
        track = repos.tracks.get_by_environment(row.env_id)
        return EnvironmentInfo(
            env_id=row.env_id,
            track=track.name if track else None,
            last_applied_commit=row.last_applied_commit,
            quarantined=row.quarantined,
            quarantine_reason=row.quarantine_reason,
            created_at=as_utc(row.created_at),
        )

    def get_environment(self, env_id: str) -> EnvironmentInfo:
        with self._store.unit_of_work() as repos:
            return self._env_info(repos, self._env_row(repos, env_id))

    def list_environments(self) -> list[EnvironmentInfo]:
        with self._store.unit_of_work() as repos:
            return [self._env_info(repos, r) for r in repos.environments.list()]

    def register_target(self, env_id: str, adapter: TargetAdapter) -> None:
        """Use ``adapter`` for the live state of ``env_id``."""
        if not isinstance(adapter, TargetAdapter):
            raise TypeError(f"{adapter!r} does not implement TargetAdapter")
        self._targets[env_id] = adapter
        logger.info("Registered target adapter %s for %s", type(adapter).__name__, env_id)

    def target_for(self, env_id: str) -> TargetAdapter:
        return self._targets.get(env_id, self._default_target)

    def live_state(self, env_id: str) -> State:
        """The live artifact set of an environment."""
        with self._store.unit_of_work() as repos:
            self._env_row(repos, env_id)
        return self.target_for(env_id).read(env_id)

    def edit_live(self, env_id: str, artifact: Artifact) -> None:
        """Simulate an out-of-band manual edit on a target."""
        with self._store.unit_of_work() as repos:
            self._env_row(repos, env_id)
        self.target_for(env_id).apply(
            env_id,
            [ArtifactChange(kind=ChangeKind.MODIFY, key=artifact.key, artifact=artifact)],
        )
        logger.info("Manual edit of %s on %s", artifact.key, env_id)

    def delete_live(self, env_id: str, key: ArtifactKey | str) -> None:
        """Simulate an out-of-band manual delete on a target."""
        with self._store.unit_of_work() as repos:
            self._env_row(repos, env_id)
        change = ArtifactChange.delete(key)
        self.target_for(env_id).apply(env_id, [change])
        logger.info("Manual delete of %s on %s", change.key, env_id)

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def submit_commit(
        self,
        track: str,
        changes: list[ArtifactChange],
        *,
        message: str | None = None,
        author: str | None = None,
        metadata: dict | None = None,
        request_id: str | None = None,
    ) -> CommitInfo:
        """Commit ``changes`` on top of ``track``'s head and advance it.

        Raises:
            TrackLockedError: A retrofit into ``track`` is in flight.
            InvalidChangeSetError: The change list is invalid.
        """

        def _run() -> CommitInfo:
            with operation_context("submit_commit", track=track):
                with self._store.unit_of_work() as repos:
                    if self._locks.is_locked(track_lock(track)):
                        raise TrackLockedError(track)
                    graph = self._graph(repos)
                    info = graph.create_commit(
                        track, changes, message=message, author=author, metadata=metadata
                    )
                    graph.advance(track, info.commit_hash)
                    return info

        return self._idempotent(request_id, "submit_commit", _run, CommitInfo.model_validate_json)

    def get_commit(self, commit_hash: str) -> CommitInfo:
        with self._store.unit_of_work() as repos:
            return self._graph(repos).get_commit(commit_hash)

    def log(self, track: str, limit: int | None = None) -> list[CommitInfo]:
        """First-parent history of ``track``, newest first."""
        with self._store.unit_of_work() as repos:
            return self._graph(repos).log(track, limit)

    def state_at(self, ref: str) -> State:
        """Artifact state at a commit hash (or prefix) or a track head."""
        with self._store.unit_of_work() as repos:
            graph = self._graph(repos)
            if repos.tracks.get(ref) is not None:
                return graph.materialize(graph.head(ref))
            return graph.materialize(graph.get_commit(ref).commit_hash)

    def is_ancestor(self, a: str, b: str) -> bool:
        with self._store.unit_of_work() as repos:
            return self._graph(repos).is_ancestor(a, b)

    def ancestors_of(self, commit_hash: str) -> set[str]:
        with self._store.unit_of_work() as repos:
            return self._graph(repos).ancestors_of(commit_hash)

    # ------------------------------------------------------------------
    # Retrofit
    # ------------------------------------------------------------------

    def request_retrofit(
        self,
        source: str,
        target: str,
        *,
        policy: MergePolicy | None = None,
        author: str | None = None,
        request_id: str | None = None,
    ) -> MergeResult:
        """Merge ``source`` into ``target`` preserving ancestry.

        Raises:
            TrackLockedError: Another merge into ``target`` is in flight.
        """
        policy = MergePolicy(policy or self._config.merge_policy)

        def _run() -> MergeResult:
            with operation_context("retrofit", source=source, track=target):
                with self._locks.hold_track(target, owner=uuid.uuid4().hex):
                    with self._store.unit_of_work() as repos:
                        return retrofit(
                            repos,
                            self._graph(repos),
                            self._bus,
                            source,
                            target,
                            policy=policy,
                            author=author,
                        )

        return self._idempotent(request_id, "retrofit", _run, MergeResult.model_validate_json)

    def resolve_conflict(
        self,
        conflict_set_id: str,
        resolutions: dict[ArtifactKey | str, Resolution | str],
        *,
        author: str | None = None,
        request_id: str | None = None,
    ) -> MergeResult:
        """Resolve every entry of an open conflict set and complete the merge.

        ``resolutions`` maps artifact keys to ``"ours"``, ``"theirs"`` or a
        :class:`Resolution` (``Resolution.custom(artifact)``).

        Raises:
            UnresolvedConflictError: An entry has no resolution.
            StaleConflictSetError: The target track moved; retrofit again.
        """

        def _run() -> MergeResult:
            with operation_context("resolve_conflict", conflict_set=conflict_set_id):
                with self._store.unit_of_work() as repos:
                    target = load_conflict_set(repos, conflict_set_id).target_track
                with self._locks.hold_track(target, owner=uuid.uuid4().hex):
                    with self._store.unit_of_work() as repos:
                        stale = supersede_if_stale(repos, self._graph(repos), conflict_set_id)
                    if stale:
                        raise StaleConflictSetError(conflict_set_id, target)
                    with self._store.unit_of_work() as repos:
                        return resolve_conflict(
                            repos, self._graph(repos), conflict_set_id, resolutions, author=author
                        )

        return self._idempotent(
            request_id, "resolve_conflict", _run, MergeResult.model_validate_json
        )

    def get_conflict_set(self, conflict_set_id: str) -> ConflictSet:
        with self._store.unit_of_work() as repos:
            return load_conflict_set(repos, conflict_set_id)

    def list_conflict_sets(
        self,
        *,
        source_track: str | None = None,
        target_track: str | None = None,
        status: ConflictSetStatus | str | None = None,
    ) -> list[ConflictSet]:
        with self._store.unit_of_work() as repos:
            rows = repos.conflicts.find(
                source_track=source_track,
                target_track=target_track,
                status=ConflictSetStatus(status) if status is not None else None,
            )
            return [
                row_to_conflict_set(r, list(repos.conflicts.get_entries(r.conflict_set_id)))
                for r in rows
            ]

    def get_retrofit(self, retrofit_id: str) -> MergeResult | None:
        with self._store.unit_of_work() as repos:
            return load_retrofit(repos, retrofit_id)

    def check_retrofit_lag(self, now: datetime | None = None) -> list[RetrofitLagExceeded]:
        """Emit RetrofitLagExceeded for every RUN -> BUILD pair whose oldest
        un-retrofitted RUN commit is older than ``retrofit_lag_seconds``."""
        now = now or datetime.now(timezone.utc)
        emitted: list[RetrofitLagExceeded] = []
        with self._store.unit_of_work() as repos:
            tracks = list(repos.tracks.list())
            runs = [t for t in tracks if t.role == TrackRole.RUN and t.head_hash]
            builds = [t for t in tracks if t.role == TrackRole.BUILD]
            for run in runs:
                for build in builds:
                    pending = get_unmerged_commits(
                        repos.commits, repos.parents, run.head_hash, build.head_hash
                    )
                    if not pending:
                        continue
                    oldest = pending[0]
                    oldest_at = as_utc(oldest.created_at)
                    if now - oldest_at <= self._config.retrofit_lag:
                        continue
                    event = RetrofitLagExceeded(
                        source_track=run.name,
                        target_track=build.name,
                        oldest_commit=oldest.commit_hash,
                        oldest_commit_at=oldest_at,
                        pending_commits=len(pending),
                    )
                    self._bus.emit(repos, event)
                    emitted.append(event)
                    logger.warning(
                        "Retrofit lag %s -> %s: %d commit(s), oldest %s from %s",
                        run.name,
                        build.name,
                        len(pending),
                        oldest.commit_hash[:12],
                        oldest_at.isoformat(),
                    )
        return emitted

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def request_drift_scan(
        self,
        env_id: str,
        *,
        now: datetime | None = None,
        request_id: str | None = None,
    ) -> DriftScanResult:
        """Compare ``env_id``'s live state with its last applied commit.

        Read-only with respect to live state and tracks; drift records are
        persisted and reused across scans.
        """

        def _run() -> DriftScanResult:
            with operation_context("drift_scan", environment=env_id):
                with self._store.unit_of_work() as repos:
                    last_applied = self._env_row(repos, env_id).last_applied_commit
                    recorded = self._graph(repos).materialize(last_applied)
                live = self.target_for(env_id).read(env_id)
                with self._store.unit_of_work() as repos:
                    result = scan_environment(
                        repos,
                        env_id,
                        live,
                        recorded,
                        last_applied,
                        staleness=self._config.drift_staleness,
                        now=now,
                    )
                    if result.records:
                        self._bus.emit(
                            repos,
                            DriftDetected(
                                env_id=env_id,
                                scan_id=result.scan_id,
                                records=[f"{r.kind} {r.key}" for r in result.records],
                                critical=sum(1 for r in result.records if r.severity == "critical"),
                            ),
                        )
                return result

        return self._idempotent(
            request_id, "drift_scan", _run, DriftScanResult.model_validate_json
        )

    def drift_records(
        self,
        env_id: str,
        *,
        include_resolved: bool = False,
        now: datetime | None = None,
    ) -> list[DriftRecord]:
        now = now or datetime.now(timezone.utc)
        with self._store.unit_of_work() as repos:
            self._env_row(repos, env_id)
            return [
                row_to_record(r, now, self._config.drift_staleness)
                for r in repos.drift.list(env_id, include_resolved=include_resolved)
            ]

    def absorb_drift(
        self,
        env_id: str,
        keys: list[ArtifactKey | str] | None = None,
        *,
        message: str | None = None,
        author: str | None = None,
    ) -> CommitInfo | None:
        """Commit live versions of drifted artifacts onto the bound track.

        The new commit becomes the environment's ``last_applied_commit``
        and the absorbed drift records are closed.  Returns None when there
        is nothing to absorb.

        Raises:
            DriftAbsorbError: No bound track, or the track has moved past
                the last applied commit.
        """
        wanted = [ArtifactKey.parse(k) if isinstance(k, str) else k for k in keys] if keys else None
        with operation_context("absorb_drift", environment=env_id):
            live = self.target_for(env_id).read(env_id)
            with self._store.unit_of_work() as repos:
                env = self._env_row(repos, env_id)
                track = repos.tracks.get_by_environment(env_id)
                if track is None:
                    raise DriftAbsorbError(f"Environment '{env_id}' has no bound track")
                if track.head_hash != env.last_applied_commit:
                    raise DriftAbsorbError(
                        f"Track '{track.name}' has moved past the last commit applied to "
                        f"'{env_id}'; deploy or reconcile it before absorbing drift"
                    )
                if self._locks.is_locked(track_lock(track.name)):
                    raise TrackLockedError(track.name)
                graph = self._graph(repos)
                changes = absorb_changes(live, graph.materialize(env.last_applied_commit), wanted)
                if not changes:
                    logger.info("No drift to absorb on %s", env_id)
                    return None
                info = graph.create_commit(
                    track.name,
                    changes,
                    message=message or f"Absorb live drift from '{env_id}'",
                    author=author,
                    metadata={"absorbed_from": env_id},
                )
                graph.advance(track.name, info.commit_hash)
                env.last_applied_commit = info.commit_hash
                close_drift(repos, env_id, [c.key for c in changes], DriftResolution.ABSORBED)
                logger.info(
                    "Absorbed %d drifted artifact(s) from %s into '%s' as %s",
                    len(changes),
                    env_id,
                    track.name,
                    info.commit_hash[:12],
                )
                return info

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    def request_deployment(
        self,
        track: str,
        env_id: str,
        *,
        overwrite_drift: bool = False,
        background: bool = False,
        request_id: str | None = None,
    ) -> DeploymentJob:
        """Deploy ``track``'s head into ``env_id``.

        Synchronous by default: returns the job in its terminal state
        (use ``job.raise_for_state()`` to turn failures into exceptions).
        With ``background=True`` the job runs on a worker thread and the
        PENDING job is returned; see :meth:`wait_for_job`.

        Raises:
            JobInProgressError: The environment has an active job.
            EnvironmentQuarantinedError: A rollback failed on it earlier.
        """

        def _run() -> DeploymentJob:
            with operation_context("request_deployment", track=track, environment=env_id):
                job = self._deployer.request(track, env_id, overwrite_drift=overwrite_drift)
            if background:
                self._futures[job.job_id] = self._pool().submit(self._run_job, job.job_id)
                return job
            return self._run_job(job.job_id)

        def _replay(stored: str) -> DeploymentJob:
            return self.get_job(DeploymentJob.model_validate_json(stored).job_id)

        return self._idempotent(request_id, "deploy", _run, _replay)

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._config.worker_threads,
                thread_name_prefix="tandem-deploy",
            )
        return self._executor

    def _run_job(self, job_id: str) -> DeploymentJob:
        job = self._deployer.run(job_id)
        if job.state == JobState.DEPLOYED:
            self._after_deploy(job)
        return job

    def _after_deploy(self, job: DeploymentJob) -> None:
        """Retrofit the environment's RUN track into every BUILD track.

        Runs when the deployed environment is bound to a RUN track,
        whichever track the job deployed.
        """
        if not self._config.auto_retrofit:
            return
        tracks = self.list_tracks()
        run = next(
            (t for t in tracks if t.environment == job.env_id and t.role == TrackRole.RUN),
            None,
        )
        if run is None:
            return
        for build in (t for t in tracks if t.role == TrackRole.BUILD):
            try:
                result = self.request_retrofit(run.name, build.name)
            except TrackLockedError:
                logger.warning(
                    "Auto-retrofit %s -> %s skipped: track is locked",
                    run.name,
                    build.name,
                )
                continue
            logger.info("Auto-retrofit after job %s: %s", job.job_id[:12], result)

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> DeploymentJob:
        """Block until a background job finishes and return it."""
        future = self._futures.pop(job_id, None)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> DeploymentJob:
        return self._deployer.get(job_id)

    def list_jobs(
        self,
        env_id: str | None = None,
        *,
        states: set[JobState] | None = None,
    ) -> list[DeploymentJob]:
        with self._store.unit_of_work() as repos:
            return [row_to_job(repos, r) for r in repos.jobs.list(env_id, states)]

    def cancel_job(self, job_id: str) -> DeploymentJob:
        """Cancel a job that has not started deploying."""
        with operation_context("cancel_job", job_id=job_id):
            return self._deployer.cancel(job_id)

    def recover_interrupted_jobs(self) -> list[DeploymentJob]:
        """Settle jobs a previous process left non-terminal."""
        with operation_context("recover_interrupted_jobs"):
            return self._deployer.recover()

    def clear_quarantine(self, env_id: str) -> EnvironmentInfo:
        """Re-enable automation on an environment after manual repair."""
        with self._store.unit_of_work() as repos:
            row = self._env_row(repos, env_id)
            row.quarantined = False
            row.quarantine_reason = None
            repos.session.flush()
            logger.warning("Quarantine cleared on %s", env_id)
            return self._env_info(repos, row)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, sink: NotificationSink) -> None:
        """Deliver every future event to ``sink``."""
        if not isinstance(sink, NotificationSink):
            raise TypeError(f"{sink!r} does not implement NotificationSink")
        self._bus.subscribe(sink)

    def unsubscribe(self, sink: NotificationSink) -> None:
        self._bus.unsubscribe(sink)

    def events(self, kind: str | None = None, limit: int | None = None) -> list[Event]:
        """Recorded events, oldest first."""
        with self._store.unit_of_work() as repos:
            return [load_event(r) for r in repos.events.list(kind, limit)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Wait for background jobs, then dispose the engine."""
        if self._closed:
            return
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._store.close()

    def __enter__(self) -> Tandem:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()

    def __repr__(self) -> str:
        if self._closed:
            return "Tandem(closed=True)"
        return f"Tandem(db='{self._config.db_url or self._config.db_path}')"
