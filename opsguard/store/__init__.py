"""
OpsGuard - Persistence Module

SQLite-backed store for guard policies, playbook versions, runs, steps,
rollback steps and the event outbox.

Run status changes are compare-and-set: a transition only applies when
the row is still in one of the expected states. Reserving a running slot
is a single conditional UPDATE, so two executors can never both observe
the last free slot.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from ..core.config import DuplicateRunPolicy
from ..core.exceptions import DuplicateRunError
from ..core.playbook import PlaybookStep, PlaybookVersion
from ..core.policy import GuardPolicy
from ..core.run import (
    IN_FLIGHT_STATUSES,
    ApprovalRecord,
    BlastRadiusEvaluation,
    RollbackStatus,
    RollbackStep,
    Run,
    RunFilter,
    RunPage,
    RunStatus,
    RunStep,
    RunTrigger,
    StepStatus,
    parse_timestamp,
    utcnow,
)
from ..events import OutboxEvent

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS guard_policies (
        company_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        max_concurrent INTEGER,
        blast_radius TEXT,
        requires_dual_control INTEGER,
        canary TEXT,
        rollback_policy TEXT,
        timeout_sec INTEGER,
        cooldown_sec INTEGER,
        updated_by TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (company_id, scope)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS playbooks (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL,
        code TEXT NOT NULL,
        name TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (company_id, code)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS playbook_versions (
        id TEXT PRIMARY KEY,
        playbook_id TEXT NOT NULL REFERENCES playbooks(id),
        version INTEGER NOT NULL,
        spec TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (playbook_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL,
        playbook_code TEXT NOT NULL,
        playbook_version_id TEXT NOT NULL,
        trigger TEXT NOT NULL,
        status TEXT NOT NULL,
        scope TEXT NOT NULL,
        scope_hash TEXT NOT NULL,
        canary INTEGER NOT NULL,
        dry_run INTEGER NOT NULL,
        blast_radius TEXT,
        approval TEXT NOT NULL,
        policy TEXT NOT NULL,
        metrics TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        started_at TEXT,
        ended_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_company_status ON runs(company_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_runs_scope_hash ON runs(company_id, scope_hash)",
    """
    CREATE TABLE IF NOT EXISTS run_steps (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id),
        idx INTEGER NOT NULL,
        step_id TEXT,
        action_code TEXT NOT NULL,
        input TEXT NOT NULL,
        outcome_checks TEXT NOT NULL,
        rollback TEXT,
        status TEXT NOT NULL,
        output TEXT,
        duration_ms INTEGER,
        rolled_back INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        started_at TEXT,
        ended_at TEXT,
        UNIQUE (run_id, idx)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rollback_steps (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id),
        run_step_id TEXT NOT NULL REFERENCES run_steps(id),
        action_code TEXT NOT NULL,
        input TEXT NOT NULL,
        status TEXT NOT NULL,
        output TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        ended_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outbox (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        topic TEXT NOT NULL,
        key TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
]


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class GuardPolicyStore:
    """Read access to stored guard policies, keyed by (company, scope)."""

    def __init__(self, store: "OpsStore"):
        self._store = store

    def get(self, company_id: str, scope: str) -> Optional[GuardPolicy]:
        return self._store.get_guard_policy(company_id, scope)


class OpsStore:
    """
    SQLite store for the run lifecycle.

    A single connection is shared and serialized with a re-entrant lock,
    which also makes ``:memory:`` databases usable in tests.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        """
        Initialize the store.

        Args:
            db_path: SQLite database path, or ":memory:"
        """
        self._db_path = str(db_path)
        self._lock = threading.RLock()

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            self._db_path,
            timeout=30.0,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._init_db()
        self.guard_policies = GuardPolicyStore(self)

    def _init_db(self) -> None:
        """Initialize the SQLite database schema."""
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Guard policies
    # ------------------------------------------------------------------

    def upsert_guard_policy(self, policy: GuardPolicy) -> GuardPolicy:
        """Create or replace the policy for (company, scope)."""
        policy.updated_at = policy.updated_at or utcnow()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO guard_policies (
                    company_id, scope, max_concurrent, blast_radius,
                    requires_dual_control, canary, rollback_policy,
                    timeout_sec, cooldown_sec, updated_by, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (company_id, scope) DO UPDATE SET
                    max_concurrent = excluded.max_concurrent,
                    blast_radius = excluded.blast_radius,
                    requires_dual_control = excluded.requires_dual_control,
                    canary = excluded.canary,
                    rollback_policy = excluded.rollback_policy,
                    timeout_sec = excluded.timeout_sec,
                    cooldown_sec = excluded.cooldown_sec,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                (
                    policy.company_id,
                    policy.scope,
                    policy.max_concurrent,
                    _dumps(policy.blast_radius),
                    None if policy.requires_dual_control is None else int(policy.requires_dual_control),
                    _dumps(policy.canary),
                    _dumps(policy.rollback_policy),
                    policy.timeout_sec,
                    policy.cooldown_sec,
                    policy.updated_by,
                    _iso(policy.updated_at),
                ),
            )
        logger.info(f"Guard policy saved: company={policy.company_id} scope={policy.scope}")
        return policy

    def get_guard_policy(self, company_id: str, scope: str) -> Optional[GuardPolicy]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM guard_policies WHERE company_id = ? AND scope = ?",
                (company_id, scope),
            ).fetchone()
        if row is None:
            return None
        dual = row["requires_dual_control"]
        return GuardPolicy(
            company_id=row["company_id"],
            scope=row["scope"],
            max_concurrent=row["max_concurrent"],
            blast_radius=_loads(row["blast_radius"]),
            requires_dual_control=None if dual is None else bool(dual),
            canary=_loads(row["canary"]),
            rollback_policy=_loads(row["rollback_policy"]),
            timeout_sec=row["timeout_sec"],
            cooldown_sec=row["cooldown_sec"],
            updated_by=row["updated_by"],
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Playbooks
    # ------------------------------------------------------------------

    def publish_version(
        self,
        company_id: str,
        playbook_code: str,
        spec: Dict[str, Any],
        created_by: str,
    ) -> PlaybookVersion:
        """
        Publish a spec as the next version of a playbook.

        The playbook row is created on first publish. Version numbers are
        allocated under the store lock and are strictly increasing.
        """
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT id FROM playbooks WHERE company_id = ? AND code = ?",
                (company_id, playbook_code),
            ).fetchone()
            if row is None:
                playbook_id = str(uuid4())
                self._conn.execute(
                    "INSERT INTO playbooks (id, company_id, code, name, created_at) VALUES (?, ?, ?, ?, ?)",
                    (playbook_id, company_id, playbook_code, spec.get("name"), _iso(utcnow())),
                )
            else:
                playbook_id = row["id"]

            latest = self._conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS v FROM playbook_versions WHERE playbook_id = ?",
                (playbook_id,),
            ).fetchone()["v"]

            version = PlaybookVersion.from_spec(
                playbook_id=playbook_id,
                playbook_code=playbook_code,
                version=latest + 1,
                spec=spec,
                created_by=created_by,
            )
            self._conn.execute(
                """
                INSERT INTO playbook_versions (
                    id, playbook_id, version, spec, content_hash, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    playbook_id,
                    version.version,
                    _dumps(version.to_spec()),
                    version.content_hash,
                    created_by,
                    _iso(version.created_at),
                ),
            )
        logger.info(f"Published playbook {playbook_code} v{version.version} ({version.content_hash})")
        return version

    def get_version(
        self,
        company_id: str,
        playbook_code: str,
        version: Optional[int] = None,
    ) -> Optional[PlaybookVersion]:
        """Fetch a specific version, or the latest when version is None."""
        query = """
            SELECT v.*, p.code AS playbook_code, p.name AS playbook_name
            FROM playbook_versions v JOIN playbooks p ON p.id = v.playbook_id
            WHERE p.company_id = ? AND p.code = ?
        """
        params: List[Any] = [company_id, playbook_code]
        if version is not None:
            query += " AND v.version = ?"
            params.append(version)
        query += " ORDER BY v.version DESC LIMIT 1"
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return self._row_to_version(row) if row else None

    def list_versions(
        self,
        company_id: str,
        playbook_code: str,
        limit: int = 20,
        offset: int = 0,
    ) -> List[PlaybookVersion]:
        """Version history of a playbook, newest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT v.*, p.code AS playbook_code, p.name AS playbook_name
                FROM playbook_versions v JOIN playbooks p ON p.id = v.playbook_id
                WHERE p.company_id = ? AND p.code = ?
                ORDER BY v.version DESC LIMIT ? OFFSET ?
                """,
                (company_id, playbook_code, limit, offset),
            ).fetchall()
        return [self._row_to_version(r) for r in rows]

    def get_version_by_id(self, version_id: str) -> Optional[PlaybookVersion]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT v.*, p.code AS playbook_code, p.name AS playbook_name
                FROM playbook_versions v JOIN playbooks p ON p.id = v.playbook_id
                WHERE v.id = ?
                """,
                (version_id,),
            ).fetchone()
        return self._row_to_version(row) if row else None

    def _row_to_version(self, row: sqlite3.Row) -> PlaybookVersion:
        spec = _loads(row["spec"])
        return PlaybookVersion(
            id=row["id"],
            playbook_id=row["playbook_id"],
            playbook_code=row["playbook_code"],
            version=row["version"],
            steps=[PlaybookStep.from_spec(i, s) for i, s in enumerate(spec["steps"])],
            guards=spec.get("guards") or {},
            content_hash=row["content_hash"],
            created_by=row["created_by"],
            name=row["playbook_name"],
            created_at=parse_timestamp(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        run: Run,
        steps: List[RunStep],
        duplicate_policy: DuplicateRunPolicy = DuplicateRunPolicy.REJECT,
    ) -> Tuple[Run, bool]:
        """
        Persist a queued run and its pending steps.

        The in-flight duplicate lookup and the insert run in one
        BEGIN IMMEDIATE transaction, so writers sharing the database file
        are serialized.

        Returns:
            Tuple of (run, created). created is False when an existing
            in-flight run was reused.

        Raises:
            DuplicateRunError: duplicate_policy is REJECT and an identical
                run is already in flight
        """
        with self._lock, self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            if duplicate_policy != DuplicateRunPolicy.ALLOW:
                existing = self._find_in_flight(run.company_id, run.playbook_code, run.scope_hash)
                if existing is not None:
                    if duplicate_policy == DuplicateRunPolicy.REJECT:
                        raise DuplicateRunError(
                            f"Run {existing} already in flight for {run.playbook_code} with the same scope",
                            existing_run_id=existing,
                        )
                    logger.info(f"Reusing in-flight run {existing} for {run.playbook_code}")
                    return self.get_run(run.company_id, existing), False

            self._conn.execute(
                """
                INSERT INTO runs (
                    id, company_id, playbook_code, playbook_version_id, trigger,
                    status, scope, scope_hash, canary, dry_run, blast_radius,
                    approval, policy, metrics, created_by, created_at,
                    started_at, ended_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.company_id,
                    run.playbook_code,
                    run.playbook_version_id,
                    run.trigger.value,
                    run.status.value,
                    _dumps(run.scope),
                    run.scope_hash,
                    int(run.canary),
                    int(run.dry_run),
                    _dumps(run.blast_radius.to_dict() if run.blast_radius else None),
                    _dumps(run.approval.to_dict()),
                    _dumps(run.policy),
                    _dumps(run.metrics),
                    run.created_by,
                    _iso(run.created_at),
                    _iso(run.started_at),
                    _iso(run.ended_at),
                ),
            )
            for step in steps:
                self._insert_step(step)
        run.steps = list(steps)
        return run, True

    def _find_in_flight(self, company_id: str, playbook_code: str, scope_hash: str) -> Optional[str]:
        placeholders = ",".join("?" for _ in IN_FLIGHT_STATUSES)
        row = self._conn.execute(
            f"""
            SELECT id FROM runs
            WHERE company_id = ? AND playbook_code = ? AND scope_hash = ?
              AND status IN ({placeholders})
            ORDER BY created_at LIMIT 1
            """,
            (company_id, playbook_code, scope_hash, *[s.value for s in IN_FLIGHT_STATUSES]),
        ).fetchone()
        return row["id"] if row else None

    def get_run(self, company_id: str, run_id: str) -> Optional[Run]:
        """Load a run with its steps and rollback steps."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM runs WHERE id = ? AND company_id = ?",
                (run_id, company_id),
            ).fetchone()
            if row is None:
                return None
            run = self._row_to_run(row)
            run.steps = self.get_steps(run.id)
            run.rollback_steps = self.get_rollback_steps(run.id)
        return run

    def get_run_status(self, run_id: str) -> Optional[RunStatus]:
        with self._lock:
            row = self._conn.execute(
                "SELECT status FROM runs WHERE id = ?", (run_id,)
            ).fetchone()
        return RunStatus(row["status"]) if row else None

    def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        target: RunStatus,
        approval: Optional[ApprovalRecord] = None,
        metrics: Optional[Dict[str, Any]] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set a run status.

        Expected states that may not move to the target are ignored.

        Returns:
            True if the row was in one of the expected states and now has
            the target status
        """
        expected_values = [s.value for s in expected if s.can_transition_to(target)]
        if not expected_values:
            logger.warning(f"Refusing transition of run {run_id} to {target.value} from {list(expected)}")
            return False
        assignments = ["status = ?"]
        params: List[Any] = [target.value]
        if approval is not None:
            assignments.append("approval = ?")
            params.append(_dumps(approval.to_dict()))
        if metrics is not None:
            assignments.append("metrics = ?")
            params.append(_dumps(metrics))
        if started_at is not None:
            assignments.append("started_at = ?")
            params.append(_iso(started_at))
        if ended_at is not None:
            assignments.append("ended_at = ?")
            params.append(_iso(ended_at))

        placeholders = ",".join("?" for _ in expected_values)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE runs SET {', '.join(assignments)} WHERE id = ? AND status IN ({placeholders})",
                (*params, run_id, *expected_values),
            )
            return cursor.rowcount == 1

    def update_run_outcome(
        self,
        run_id: str,
        metrics: Dict[str, Any],
        ended_at: datetime,
    ) -> None:
        """Write metrics and end time without touching the status."""
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE runs SET metrics = ?, ended_at = ? WHERE id = ?",
                (_dumps(metrics), _iso(ended_at), run_id),
            )

    def try_start_run(
        self,
        company_id: str,
        run_id: str,
        max_concurrent: int,
        started_at: datetime,
    ) -> bool:
        """
        Atomically move an approved run to running if a slot is free.

        Returns:
            True if the slot was reserved
        """
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                UPDATE runs SET status = ?, started_at = ?
                WHERE id = ? AND company_id = ? AND status = ?
                  AND (SELECT COUNT(*) FROM runs WHERE company_id = ? AND status = ?) < ?
                """,
                (
                    RunStatus.RUNNING.value,
                    _iso(started_at),
                    run_id,
                    company_id,
                    RunStatus.APPROVED.value,
                    company_id,
                    RunStatus.RUNNING.value,
                    max_concurrent,
                ),
            )
            return cursor.rowcount == 1

    def count_running(self, company_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM runs WHERE company_id = ? AND status = ?",
                (company_id, RunStatus.RUNNING.value),
            ).fetchone()
        return row["n"]

    def last_run_started_at(
        self,
        company_id: str,
        playbook_code: str,
        exclude_run_id: Optional[str] = None,
    ) -> Optional[datetime]:
        """Start time of the most recent live run of a playbook."""
        query = """
            SELECT MAX(started_at) AS last FROM runs
            WHERE company_id = ? AND playbook_code = ? AND dry_run = 0
              AND started_at IS NOT NULL
        """
        params: List[Any] = [company_id, playbook_code]
        if exclude_run_id:
            query += " AND id != ?"
            params.append(exclude_run_id)
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return parse_timestamp(row["last"]) if row and row["last"] else None

    def list_runs(
        self,
        company_id: str,
        run_filter: Optional[RunFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RunPage:
        """List runs newest first. Steps are not loaded."""
        clauses = ["company_id = ?"]
        params: List[Any] = [company_id]
        run_filter = run_filter or RunFilter()
        if run_filter.status is not None:
            clauses.append("status = ?")
            params.append(run_filter.status.value)
        if run_filter.playbook_code:
            clauses.append("playbook_code = ?")
            params.append(run_filter.playbook_code)
        if run_filter.since is not None:
            clauses.append("created_at >= ?")
            params.append(_iso(run_filter.since))
        if run_filter.until is not None:
            clauses.append("created_at <= ?")
            params.append(_iso(run_filter.until))
        where = " AND ".join(clauses)

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM runs WHERE {where}", params
            ).fetchone()["n"]
            rows = self._conn.execute(
                f"SELECT * FROM runs WHERE {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return RunPage(
            runs=[self._row_to_run(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        blast = _loads(row["blast_radius"])
        return Run(
            id=row["id"],
            company_id=row["company_id"],
            playbook_code=row["playbook_code"],
            playbook_version_id=row["playbook_version_id"],
            approval=ApprovalRecord.from_dict(_loads(row["approval"])),
            trigger=RunTrigger(row["trigger"]),
            status=RunStatus(row["status"]),
            scope=_loads(row["scope"]),
            scope_hash=row["scope_hash"],
            canary=bool(row["canary"]),
            dry_run=bool(row["dry_run"]),
            blast_radius=BlastRadiusEvaluation.from_dict(blast) if blast else None,
            policy=_loads(row["policy"]),
            metrics=_loads(row["metrics"]),
            created_by=row["created_by"],
            created_at=parse_timestamp(row["created_at"]),
            started_at=parse_timestamp(row["started_at"]),
            ended_at=parse_timestamp(row["ended_at"]),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _insert_step(self, step: RunStep) -> None:
        self._conn.execute(
            """
            INSERT INTO run_steps (
                id, run_id, idx, step_id, action_code, input, outcome_checks,
                rollback, status, output, duration_ms, rolled_back, error,
                started_at, ended_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                step.id,
                step.run_id,
                step.idx,
                step.step_id,
                step.action_code,
                _dumps(step.input),
                _dumps(step.outcome_checks),
                _dumps(step.rollback),
                step.status.value,
                _dumps(step.output),
                step.duration_ms,
                int(step.rolled_back),
                step.error,
                _iso(step.started_at),
                _iso(step.ended_at),
            ),
        )

    def update_step(self, step: RunStep) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE run_steps SET status = ?, output = ?, duration_ms = ?,
                    rolled_back = ?, error = ?, started_at = ?, ended_at = ?
                WHERE id = ?
                """,
                (
                    step.status.value,
                    _dumps(step.output),
                    step.duration_ms,
                    int(step.rolled_back),
                    step.error,
                    _iso(step.started_at),
                    _iso(step.ended_at),
                    step.id,
                ),
            )

    def get_steps(self, run_id: str) -> List[RunStep]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM run_steps WHERE run_id = ? ORDER BY idx", (run_id,)
            ).fetchall()
        return [
            RunStep(
                id=r["id"],
                run_id=r["run_id"],
                idx=r["idx"],
                step_id=r["step_id"],
                action_code=r["action_code"],
                input=_loads(r["input"]),
                outcome_checks=_loads(r["outcome_checks"]) or [],
                rollback=_loads(r["rollback"]),
                status=StepStatus(r["status"]),
                output=_loads(r["output"]),
                duration_ms=r["duration_ms"],
                rolled_back=bool(r["rolled_back"]),
                error=r["error"],
                started_at=parse_timestamp(r["started_at"]),
                ended_at=parse_timestamp(r["ended_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Rollback steps
    # ------------------------------------------------------------------

    def insert_rollback_step(self, step: RollbackStep) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO rollback_steps (
                    id, run_id, run_step_id, action_code, input, status,
                    output, error, created_at, ended_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.id,
                    step.run_id,
                    step.run_step_id,
                    step.action_code,
                    _dumps(step.input),
                    step.status.value,
                    _dumps(step.output),
                    step.error,
                    _iso(step.created_at),
                    _iso(step.ended_at),
                ),
            )

    def update_rollback_step(self, step: RollbackStep) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE rollback_steps SET status = ?, output = ?, error = ?, ended_at = ? WHERE id = ?",
                (step.status.value, _dumps(step.output), step.error, _iso(step.ended_at), step.id),
            )

    def get_rollback_steps(self, run_id: str) -> List[RollbackStep]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM rollback_steps WHERE run_id = ? ORDER BY rowid", (run_id,)
            ).fetchall()
        return [
            RollbackStep(
                id=r["id"],
                run_id=r["run_id"],
                run_step_id=r["run_step_id"],
                action_code=r["action_code"],
                input=_loads(r["input"]),
                status=RollbackStatus(r["status"]),
                output=_loads(r["output"]),
                error=r["error"],
                created_at=parse_timestamp(r["created_at"]),
                ended_at=parse_timestamp(r["ended_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def append_outbox(self, event: OutboxEvent) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO outbox (id, topic, key, payload, created_at) VALUES (?, ?, ?, ?, ?)",
                (event.id, event.topic, event.key, _dumps(event.payload), _iso(event.created_at)),
            )

    def list_outbox(self, topic: Optional[str] = None, key: Optional[str] = None) -> List[OutboxEvent]:
        query = "SELECT * FROM outbox"
        clauses = []
        params: List[Any] = []
        if topic:
            clauses.append("topic = ?")
            params.append(topic)
        if key:
            clauses.append("key = ?")
            params.append(key)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            OutboxEvent(
                id=r["id"],
                topic=r["topic"],
                key=r["key"],
                payload=_loads(r["payload"]),
                created_at=parse_timestamp(r["created_at"]),
            )
            for r in rows
        ]
