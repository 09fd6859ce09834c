"""Tests for plan execution against the scripted remote store."""

from __future__ import annotations

from dataclasses import replace

import pytest
from helpers import BUCKET, WIDGET, applied, build_registry, make_validated
from remote_mock import Fault, FaultKind, ScriptedRemoteStore

from stack_controller.config import Config
from stack_controller.executor import ApplyReport, Executor
from stack_controller.planner import ActionKind, Plan, compute_plan, retired_key
from stack_controller.state_store import InMemoryStateStore
from stack_controller.validation import ValidatedTemplate


async def _apply(
    validated: ValidatedTemplate,
    remote: ScriptedRemoteStore,
    store: InMemoryStateStore,
    config: Config,
) -> tuple[Plan, ApplyReport]:
    plan = compute_plan(validated, store.list_all())
    report = await Executor(remote, store, config).apply(plan, validated)
    return plan, report


@pytest.fixture
def remote() -> ScriptedRemoteStore:
    return ScriptedRemoteStore(registry=build_registry())


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


class TestApply:
    """Tests for successful applies."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test dependents see identifiers and attributes produced earlier in the run."""
        validated = make_validated(
            {
                "A": {"Type": BUCKET},
                "B": {
                    "Type": WIDGET,
                    "Properties": {
                        "Bucket": {"Ref": "A"},
                        "BucketArn": {"Fn::GetAtt": ["A", "Arn"]},
                    },
                },
            }
        )
        _, report = await _apply(validated, remote, store, fast_config)

        assert report.success
        assert report.succeeded == ["A", "B"]
        assert remote.index("end", "create", "A") < remote.index("start", "create", "B")

        a = store.get("A")
        b = store.get("B")
        assert b.properties == {"Bucket": a.remote_id, "BucketArn": f"{a.remote_id}.arn"}
        assert b.depends_on == ["A"]
        assert b.attributes == {"Endpoint": f"{b.remote_id}.endpoint"}

        replan = compute_plan(validated, store.list_all())
        assert not replan.has_changes

    @pytest.mark.asyncio
    async def test_concurrency_bound(
        self, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test independent actions run in parallel up to the limit."""
        remote = ScriptedRemoteStore(registry=build_registry(), latency_seconds=0.02)
        validated = make_validated({f"B{i}": {"Type": BUCKET} for i in range(6)})
        config = replace(fast_config, max_concurrency=2)

        _, report = await _apply(validated, remote, store, config)

        assert report.success
        assert remote.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_waits_for_readiness(
        self, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test resources that become ready after a few polls succeed."""
        remote = ScriptedRemoteStore(registry=build_registry(), polls_until_ready=3)
        validated = make_validated({"W": {"Type": WIDGET}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.success
        describes = [call for call in remote.calls if call[0] == "describe"]
        assert len(describes) == 3

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_calls(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a dry run skips every action."""
        validated = make_validated({"A": {"Type": BUCKET}})
        _, report = await _apply(validated, remote, store, replace(fast_config, dry_run=True))

        assert report.skipped == ["A"]
        assert report.success
        assert remote.calls == []
        assert store.list_all() == {}

    @pytest.mark.asyncio
    async def test_noop_records_new_dependencies(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a changed DependsOn is written to state without remote calls."""
        store.put(applied("A", BUCKET))
        store.put(applied("B", BUCKET))
        validated = make_validated(
            {"A": {"Type": BUCKET}, "B": {"Type": BUCKET, "DependsOn": "A"}}
        )

        plan, report = await _apply(validated, remote, store, fast_config)

        assert [a.kind for a in plan.actions] == [ActionKind.NOOP, ActionKind.NOOP]
        assert report.success
        assert remote.calls == []
        assert store.get("B").depends_on == ["A"]


class TestRetry:
    """Tests for transient and permanent remote errors."""

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a call that fails twice succeeds on the third attempt."""
        remote.inject(Fault("create", "A", FaultKind.TRANSIENT, times=2))
        validated = make_validated({"A": {"Type": BUCKET}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.success
        assert report.outcomes["A"].attempts == 3
        assert remote.started("create") == ["A", "A", "A"]

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test the action fails once every attempt failed."""
        remote.inject(Fault("create", "A", FaultKind.TRANSIENT, times=None))
        validated = make_validated({"A": {"Type": BUCKET}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.failed == ["A"]
        assert report.outcomes["A"].attempts == fast_config.retry.max_attempts
        assert "Simulated transient failure" in report.outcomes["A"].error
        assert store.get("A") is None

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test permanent errors fail at once."""
        remote.inject(Fault("create", "A", FaultKind.PERMANENT))
        validated = make_validated({"A": {"Type": BUCKET}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.failed == ["A"]
        assert report.outcomes["A"].attempts == 1

    @pytest.mark.asyncio
    async def test_attempts_do_not_carry_over_between_applies(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a reused executor counts attempts afresh on every apply."""
        executor = Executor(remote, store, fast_config)
        remote.inject(Fault("create", "A", FaultKind.TRANSIENT, times=2))
        first = make_validated({"A": {"Type": BUCKET}, "B": {"Type": BUCKET}})
        first_report = await executor.apply(compute_plan(first, store.list_all()), first)
        assert first_report.outcomes["A"].attempts == 3

        second = make_validated(
            {"A": {"Type": BUCKET, "Properties": {"Label": "v2"}}, "B": {"Type": BUCKET}}
        )
        plan = compute_plan(second, store.list_all())
        second_report = await executor.apply(plan, second)

        assert [a.kind for a in plan.actions] == [ActionKind.UPDATE, ActionKind.NOOP]
        assert second_report.success
        assert second_report.outcomes["A"].attempts == 1
        assert second_report.outcomes["B"].attempts == 0


class TestFailures:
    """Tests for failure isolation, timeouts and readiness failures."""

    @pytest.mark.asyncio
    async def test_failure_aborts_dependents_only(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a running sibling finishes while dependents of the failure never start."""
        remote.inject(Fault("create", "A", FaultKind.PERMANENT))
        remote.inject(Fault("create", "C", FaultKind.HANG, delay_seconds=0.05))
        validated = make_validated(
            {
                "A": {"Type": BUCKET},
                "B": {"Type": BUCKET, "Properties": {"Target": {"Ref": "A"}}},
                "C": {"Type": BUCKET},
                "D": {"Type": BUCKET, "DependsOn": "B"},
            }
        )

        _, report = await _apply(validated, remote, store, fast_config)

        assert not report.success
        assert report.failed == ["A"]
        assert report.aborted == ["B", "D"]
        assert report.succeeded == ["C"]
        assert report.outcomes["B"].error == "prerequisite 'A' did not succeed"
        assert remote.started("create") == ["A", "C"]
        assert set(store.list_all()) == {"C"}

    @pytest.mark.asyncio
    async def test_exhausted_retries_abort_dependents_only(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a prerequisite that keeps failing transiently aborts its dependent."""
        remote.inject(Fault("create", "A", FaultKind.TRANSIENT, times=None))
        validated = make_validated(
            {
                "A": {"Type": BUCKET},
                "B": {"Type": BUCKET, "Properties": {"Target": {"Ref": "A"}}},
                "C": {"Type": BUCKET},
            }
        )

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.failed == ["A"]
        assert report.aborted == ["B"]
        assert report.succeeded == ["C"]
        assert report.outcomes["A"].attempts == fast_config.retry.max_attempts
        assert report.outcomes["B"].attempts == 0
        assert "B" not in remote.started("create")
        assert set(store.list_all()) == {"C"}

    @pytest.mark.asyncio
    async def test_action_timeout(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a hung remote call fails the action instead of stalling the apply."""
        remote.inject(Fault("create", "A", FaultKind.HANG, delay_seconds=5))
        validated = make_validated({"A": {"Type": BUCKET}, "B": {"Type": BUCKET}})
        config = replace(fast_config, action_timeout_seconds=0.1, readiness_timeout_seconds=0.1)

        _, report = await _apply(validated, remote, store, config)

        assert report.failed == ["A"]
        assert report.succeeded == ["B"]
        assert "timed out" in report.outcomes["A"].error

    @pytest.mark.asyncio
    async def test_never_ready(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test readiness polling gives up after the readiness timeout."""
        remote.inject(Fault("create", "W", FaultKind.NEVER_READY))
        validated = make_validated({"W": {"Type": WIDGET}})
        config = replace(fast_config, readiness_timeout_seconds=0.05)

        _, report = await _apply(validated, remote, store, config)

        assert report.failed == ["W"]
        assert "not ready" in report.outcomes["W"].error
        assert store.get("W") is None

    @pytest.mark.asyncio
    async def test_ready_failed(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a resource that ends up failed fails the action."""
        remote.inject(Fault("create", "W", FaultKind.READY_FAILED))
        validated = make_validated({"W": {"Type": WIDGET}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.failed == ["W"]
        assert "failed to become ready" in report.outcomes["W"].error


class TestDeleteAndReplace:
    """Tests for deletes and replacements against existing resources."""

    @pytest.mark.asyncio
    async def test_delete_of_missing_resource_succeeds(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a resource already gone remotely is simply forgotten."""
        store.put(applied("A", BUCKET))
        validated = make_validated({})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.success
        assert store.list_all() == {}

    @pytest.mark.asyncio
    async def test_create_before_delete_replacement(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test the dependent moves to the new instance before the old one goes."""
        old = remote.seed("R", WIDGET, {"Size": 1})
        s = remote.seed("S", BUCKET, {"Target": old.remote_id})
        store.put(applied("R", WIDGET, remote_id=old.remote_id, properties={"Size": 1}))
        store.put(
            applied(
                "S",
                BUCKET,
                remote_id=s.remote_id,
                properties={"Target": old.remote_id},
                depends_on=["R"],
            )
        )
        validated = make_validated(
            {
                "R": {"Type": WIDGET, "Properties": {"Size": 2}},
                "S": {"Type": BUCKET, "Properties": {"Target": {"Ref": "R"}}},
            }
        )

        plan, report = await _apply(validated, remote, store, fast_config)

        assert [a.key for a in plan.actions] == ["R", "S", retired_key("R")]
        assert report.success
        assert remote.index("end", "create", "R") < remote.index("start", "update", "S")
        assert remote.index("end", "update", "S") < remote.index("start", "delete", "R")

        r = store.get("R")
        assert r.remote_id != old.remote_id
        assert r.pending_deletion == []
        assert store.get("S").properties == {"Target": r.remote_id}
        assert remote.find(WIDGET, old.remote_id) is None

    @pytest.mark.asyncio
    async def test_interrupted_delete_first_replacement(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test state only keeps what succeeded when the new instance fails."""
        old = remote.seed("W", WIDGET, {"Size": 1})
        store.put(applied("W", WIDGET, remote_id=old.remote_id, properties={"Size": 1}))
        remote.inject(Fault("create", "W", FaultKind.PERMANENT))
        validated = make_validated({"W": {"Type": WIDGET, "Properties": {"Size": 2}}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.succeeded == [retired_key("W")]
        assert report.failed == ["W"]
        assert store.get("W") is None

        replan = compute_plan(validated, store.list_all())
        assert replan.get("W").kind == ActionKind.CREATE

    @pytest.mark.asyncio
    async def test_leftover_from_interrupted_replacement_is_cleaned_up(
        self, remote: ScriptedRemoteStore, store: InMemoryStateStore, fast_config: Config
    ) -> None:
        """Test a replaced instance whose delete never ran is deleted on the next apply."""
        old = remote.seed("A", BUCKET, remote_id="a-old")
        new = remote.seed("A", BUCKET, remote_id="a-new")
        store.put(applied("A", BUCKET, remote_id=new.remote_id, pending_deletion=[old.remote_id]))
        validated = make_validated({"A": {"Type": BUCKET}})

        _, report = await _apply(validated, remote, store, fast_config)

        assert report.success
        assert remote.find(BUCKET, "a-old") is None
        assert remote.find(BUCKET, "a-new") is not None
        assert store.get("A").pending_deletion == []

