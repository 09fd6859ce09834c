"""Executor: apply a plan against the remote store.

Actions run as asyncio tasks bounded by a semaphore. An action starts once
every prerequisite has succeeded. When an action fails, its not-yet-started
dependents are aborted; independent actions that are running finish.

Each mutating action:
1. Resolves its properties against the current state (identifiers and
   attributes produced earlier in the same run are visible)
2. Calls the remote store, retrying TransientRemoteError with exponential
   backoff and jitter
3. Polls describe until the resource is ready (types that wait for readiness)
4. Writes the state entry, which is durable before the action counts as done

SECURITY: Every action runs under a timeout so a hung remote call cannot stall
the whole apply. There is no automatic rollback; a partial apply leaves the
state store describing exactly what succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import Config
from .errors import (
    ActionFailed,
    PermanentRemoteError,
    StackError,
    TransientRemoteError,
    UnresolvedReference,
)
from .expressions import ResolutionContext, contains_unknown, resolve
from .planner import Action, ActionKind, Plan
from .remote import RemoteNotFound, RemoteResource, RemoteStore, ResourceStatus
from .state_store import AppliedState, StateStore
from .validation import ValidatedTemplate

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.2


class ActionStatus(str, Enum):
    """Outcome of one action in an apply."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"  # A prerequisite failed; never started
    SKIPPED = "skipped"  # Dry run


@dataclass
class ActionOutcome:
    """What happened to one action."""

    key: str
    status: ActionStatus
    error: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0


@dataclass
class ApplyReport:
    """Result of applying a plan."""

    outcomes: dict[str, ActionOutcome] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outputs: dict[str, Any] = field(default_factory=dict)

    def _keys(self, status: ActionStatus) -> list[str]:
        return sorted(k for k, o in self.outcomes.items() if o.status == status)

    @property
    def succeeded(self) -> list[str]:
        return self._keys(ActionStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._keys(ActionStatus.FAILED)

    @property
    def aborted(self) -> list[str]:
        return self._keys(ActionStatus.ABORTED)

    @property
    def skipped(self) -> list[str]:
        return self._keys(ActionStatus.SKIPPED)

    @property
    def success(self) -> bool:
        """Check if every action succeeded (or was skipped in a dry run)."""
        return not self.failed and not self.aborted

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "succeeded": self.succeeded,
            "failed": {k: self.outcomes[k].error for k in self.failed},
            "aborted": self.aborted,
            "skipped": self.skipped,
            "outputs": dict(self.outputs),
            "duration_seconds": self.duration_seconds,
        }


class Executor:
    """Runs plan actions against a RemoteStore and records state."""

    def __init__(self, remote: RemoteStore, state_store: StateStore, config: Config) -> None:
        """Initialize executor.

        Args:
            remote: Remote resource store.
            state_store: Where applied state is recorded.
            config: Concurrency, timeout and retry settings.
        """
        self._remote = remote
        self._store = state_store
        self._config = config

    async def apply(self, plan: Plan, validated: ValidatedTemplate) -> ApplyReport:
        """Apply every action of a plan.

        Args:
            plan: Plan computed for ``validated`` against the current state.
            validated: Template the plan was computed from.

        Returns:
            ApplyReport with the outcome of every action. Failures are
            reported, not raised.
        """
        report = ApplyReport()
        actions = {action.key: action for action in plan.actions}

        if self._config.dry_run:
            for key in actions:
                report.outcomes[key] = ActionOutcome(key=key, status=ActionStatus.SKIPPED)
            report.end_time = datetime.now(UTC)
            logger.info("Dry run, no remote calls made", extra={"actions": len(actions)})
            return report

        graph = plan.action_graph()
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        satisfied: set[str] = set()
        finished_bad: set[str] = set()
        started: set[str] = set()
        running: dict[asyncio.Task[ActionOutcome], str] = {}
        # Remote call attempts per action key, local to this apply
        attempts: dict[str, int] = {}

        while True:
            ready = graph.get_ready_nodes(satisfied, excluded=started | finished_bad)
            for key in ready:
                started.add(key)
                task = asyncio.create_task(
                    self._run_action(actions[key], validated, semaphore, attempts)
                )
                running[task] = key

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                key = running.pop(task)
                outcome = task.result()
                report.outcomes[key] = outcome
                if outcome.status == ActionStatus.SUCCEEDED:
                    satisfied.add(key)
                    continue

                finished_bad.add(key)
                for dependent in sorted(graph.descendants(key) - started):
                    if dependent in report.outcomes:
                        continue
                    finished_bad.add(dependent)
                    report.outcomes[dependent] = ActionOutcome(
                        key=dependent,
                        status=ActionStatus.ABORTED,
                        error=f"prerequisite '{key}' did not succeed",
                    )
                    logger.warning(
                        "Action aborted",
                        extra={"action": dependent, "failed_prerequisite": key},
                    )

        report.end_time = datetime.now(UTC)
        self._log_report(report)
        return report

    async def _run_action(
        self,
        action: Action,
        validated: ValidatedTemplate,
        semaphore: asyncio.Semaphore,
        attempts: dict[str, int],
    ) -> ActionOutcome:
        """Run one action under the concurrency bound and timeout."""
        async with semaphore:
            loop = asyncio.get_running_loop()
            started = loop.time()
            attempts[action.key] = 0
            logger.info(
                "Action started",
                extra={"action": action.key, "kind": action.kind.value, "type": action.type},
            )
            status = ActionStatus.SUCCEEDED
            error: str | None = None
            try:
                await asyncio.wait_for(
                    self._execute(action, validated, attempts),
                    timeout=self._config.action_timeout_seconds,
                )
            except TimeoutError:
                status = ActionStatus.FAILED
                error = f"timed out after {self._config.action_timeout_seconds}s"
                logger.error(
                    "Action timed out",
                    extra={
                        "action": action.key,
                        "timeout_seconds": self._config.action_timeout_seconds,
                    },
                )
            except ActionFailed as e:
                status = ActionStatus.FAILED
                error = str(e.cause)
                logger.error("Action failed", extra={"action": action.key, "error": error})
            except StackError as e:
                status = ActionStatus.FAILED
                error = str(e)
                logger.error("Action failed", extra={"action": action.key, "error": error})
            except Exception as e:
                status = ActionStatus.FAILED
                error = f"unexpected error: {e}"
                logger.exception("Unexpected error in action", extra={"action": action.key})

            outcome = ActionOutcome(
                key=action.key,
                status=status,
                error=error,
                attempts=attempts.get(action.key, 0),
                duration_seconds=loop.time() - started,
            )
            if status == ActionStatus.SUCCEEDED:
                logger.info(
                    "Action succeeded",
                    extra={"action": action.key, "duration_seconds": outcome.duration_seconds},
                )
            return outcome

    async def _execute(
        self, action: Action, validated: ValidatedTemplate, attempts: dict[str, int]
    ) -> None:
        if action.kind == ActionKind.NOOP:
            self._refresh_dependencies(action)
        elif action.kind == ActionKind.DELETE:
            await self._delete(action, attempts)
        elif action.kind == ActionKind.UPDATE:
            await self._update(action, validated, attempts)
        else:
            await self._create(action, validated, attempts)

    # =========================================================================
    # Action kinds
    # =========================================================================

    def _resolve_properties(self, action: Action, validated: ValidatedTemplate) -> dict[str, Any]:
        applied = self._store.list_all()
        context = ResolutionContext(
            parameters=dict(validated.parameters),
            exports=validated.exports,
            resource_ids={name: state.remote_id for name, state in applied.items()},
            attributes={name: dict(state.attributes) for name, state in applied.items()},
        )
        properties = resolve(action.properties, context, action.name)
        if contains_unknown(properties):
            raise UnresolvedReference(
                f"{action.name}: properties still unknown at apply time", [action.name]
            )
        return properties

    async def _create(
        self, action: Action, validated: ValidatedTemplate, attempts: dict[str, int]
    ) -> None:
        properties = self._resolve_properties(action, validated)
        resource = await self._call_with_retry(
            action, lambda: self._remote.create(action.type, action.name, properties), attempts
        )
        resource = await self._wait_until_ready(action, resource, validated)

        with self._store.lock(action.name):
            prior = self._store.get(action.name)
            pending = list(prior.pending_deletion) if prior is not None else []
            if prior is not None and prior.remote_id != resource.remote_id:
                # Old instance is deleted by its own action
                pending.append(prior.remote_id)
            self._store.put(
                AppliedState(
                    name=action.name,
                    type=action.type,
                    remote_id=resource.remote_id,
                    properties=properties,
                    attributes=dict(resource.attributes),
                    depends_on=list(action.depends_on),
                    pending_deletion=pending,
                )
            )

    async def _update(
        self, action: Action, validated: ValidatedTemplate, attempts: dict[str, int]
    ) -> None:
        assert action.remote_id is not None
        remote_id = action.remote_id
        properties = self._resolve_properties(action, validated)
        resource = await self._call_with_retry(
            action, lambda: self._remote.update(action.type, remote_id, properties), attempts
        )
        resource = await self._wait_until_ready(action, resource, validated)

        with self._store.lock(action.name):
            prior = self._store.get(action.name)
            self._store.put(
                AppliedState(
                    name=action.name,
                    type=action.type,
                    remote_id=resource.remote_id,
                    properties=properties,
                    attributes=dict(resource.attributes),
                    depends_on=list(action.depends_on),
                    pending_deletion=list(prior.pending_deletion) if prior else [],
                )
            )

    async def _delete(self, action: Action, attempts: dict[str, int]) -> None:
        assert action.remote_id is not None
        remote_id = action.remote_id

        async def delete() -> None:
            try:
                await self._remote.delete(action.type, remote_id)
            except RemoteNotFound:
                logger.info(
                    "Resource already gone",
                    extra={"action": action.key, "remote_id": remote_id},
                )

        await self._call_with_retry(action, delete, attempts)

        with self._store.lock(action.name):
            entry = self._store.get(action.name)
            if entry is None:
                return
            if entry.remote_id == remote_id:
                if entry.pending_deletion:
                    # Keep the entry so leftover instances stay tracked; the
                    # replacement records this id as pending and a later
                    # delete of it finds nothing
                    logger.debug(
                        "State entry kept for pending deletions",
                        extra={"action": action.key, "pending": entry.pending_deletion},
                    )
                    return
                self._store.delete(action.name)
            elif remote_id in entry.pending_deletion:
                entry.pending_deletion = [r for r in entry.pending_deletion if r != remote_id]
                self._store.put(entry)

    def _refresh_dependencies(self, action: Action) -> None:
        """Record a changed DependsOn list without touching the remote store."""
        with self._store.lock(action.name):
            entry = self._store.get(action.name)
            if entry is not None and entry.depends_on != action.depends_on:
                entry.depends_on = list(action.depends_on)
                self._store.put(entry)

    # =========================================================================
    # Remote calls
    # =========================================================================

    async def _call_with_retry(
        self,
        action: Action,
        operation: Callable[[], Awaitable[T]],
        attempts: dict[str, int],
    ) -> T:
        """Call the remote store with exponential backoff retry.

        Records the attempt number under the action key in ``attempts``.

        Raises:
            ActionFailed: On a permanent error, or when all attempts fail.
        """
        policy = self._config.retry
        last_error: TransientRemoteError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            attempts[action.key] = attempt
            try:
                return await operation()
            except PermanentRemoteError as e:
                raise ActionFailed(action.key, e) from e
            except TransientRemoteError as e:
                last_error = e

                if attempt < policy.max_attempts:
                    # Exponential backoff with jitter
                    backoff = policy.backoff(attempt)
                    wait_time = backoff + random.uniform(0, backoff * JITTER_FRACTION)

                    logger.warning(
                        "Remote call failed, retrying",
                        extra={
                            "action": action.key,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)

        # Loop runs at least once (max_attempts >= 1)
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise ActionFailed(action.key, last_error)

    async def _wait_until_ready(
        self, action: Action, resource: RemoteResource, validated: ValidatedTemplate
    ) -> RemoteResource:
        """Poll describe until the resource is ready.

        Raises:
            ActionFailed: If the resource fails, disappears, or is not ready
                within the readiness timeout.
        """
        registry = validated.registry
        if action.type in registry and not registry.get(action.type).wait_for_ready:
            return resource

        policy = self._config.retry
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.readiness_timeout_seconds
        interval = policy.poll_interval_seconds
        current = resource

        while current.status != ResourceStatus.READY:
            if current.status == ResourceStatus.FAILED:
                raise ActionFailed(
                    action.key,
                    PermanentRemoteError(
                        f"{action.type} '{current.remote_id}' failed to become ready"
                    ),
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ActionFailed(
                    action.key,
                    TransientRemoteError(
                        f"{action.type} '{current.remote_id}' not ready after "
                        f"{self._config.readiness_timeout_seconds}s"
                    ),
                )
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 2, policy.max_backoff_seconds)
            try:
                current = await self._remote.describe(action.type, current.remote_id)
            except TransientRemoteError as e:
                logger.debug(
                    "Readiness poll failed, will poll again",
                    extra={"action": action.key, "error": str(e)},
                )
            except PermanentRemoteError as e:
                raise ActionFailed(action.key, e) from e

        logger.debug("Resource ready", extra={"action": action.key, "remote_id": current.remote_id})
        return current

    def _log_report(self, report: ApplyReport) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "succeeded": len(report.succeeded),
            "failed": len(report.failed),
            "aborted": len(report.aborted),
            "duration_seconds": report.duration_seconds,
        }
        if report.success:
            logger.info("Apply complete", extra=extra)
        else:
            extra["failed_actions"] = report.failed
            logger.error("Apply finished with failures", extra=extra)
