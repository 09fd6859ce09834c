"""Reconciliation of one stack: validate, plan, apply, publish outputs.

This module ties the pipeline together:
1. Validate the template and bind parameters (exports come from the state store)
2. Build the dependency graph
3. Plan against the last-applied state
4. Apply the plan with the executor
5. After a fully successful apply, resolve outputs and publish exports

Everything up to step 3 is side-effect free; validation and planning errors
are raised before any remote call. Apply failures are reported in the result.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import Config
from .dependency import build_dependency_graph
from .executor import ApplyReport, Executor
from .models import Template
from .outputs import evaluate_outputs, publish_outputs
from .planner import Plan, Planner
from .remote import FileRemoteStore, RemoteStore
from .resource_types import ResourceTypeRegistry, default_registry
from .state_store import FileStateStore, StateStore
from .validation import ValidatedTemplate, validate_template

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of a single apply."""

    stack_name: str
    plan: Plan
    report: ApplyReport
    outputs: dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if every action of the plan succeeded."""
        return self.report.success


class Reconciler:
    """Runs the validate, plan and apply pipeline for one stack."""

    def __init__(
        self,
        config: Config,
        *,
        remote: RemoteStore | None = None,
        state_store: StateStore | None = None,
        registry: ResourceTypeRegistry | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Stack configuration.
            remote: Remote store (default: file simulator at config.remote_file).
            state_store: State store (default: JSON file at config.state_file).
                Shared stores are bound to config.stack_name.
            registry: Resource type schemas (default: built-in schemas).
        """
        self._config = config
        self._registry = registry or default_registry()
        # Resource entries are scoped to this stack; exports stay shared
        self._store = (state_store or FileStateStore(config.state_file)).bind(config.stack_name)
        self._remote = remote or FileRemoteStore(config.remote_file, self._registry)
        self._planner = Planner()
        self._executor = Executor(self._remote, self._store, config)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def state_store(self) -> StateStore:
        return self._store

    def validate(
        self, template: Template, parameters: Mapping[str, Any] | None = None
    ) -> ValidatedTemplate:
        """Validate a template against this stack's context."""
        return validate_template(
            template,
            parameters,
            stack_name=self._config.stack_name,
            region=self._config.region,
            exports=self._store.get_exports(),
            export_owners=self._store.export_owners(),
            registry=self._registry,
        )

    def plan(
        self, template: Template, parameters: Mapping[str, Any] | None = None
    ) -> tuple[ValidatedTemplate, Plan]:
        """Validate a template and plan it against applied state.

        Raises:
            ValidationError: If the template is invalid or cyclic.
            PlanConflict: If the plan would race on a remote identifier.
        """
        validated = self.validate(template, parameters)
        graph = build_dependency_graph(validated)
        plan = self._planner.plan(validated, self._store.list_all(), graph)
        return validated, plan

    async def apply(
        self, template: Template, parameters: Mapping[str, Any] | None = None
    ) -> ReconcileResult:
        """Plan and apply a template.

        Raises:
            ValidationError: If the template is invalid or cyclic.
            PlanConflict: If the plan would race on a remote identifier.
        """
        start_time = datetime.now(UTC)
        validated, plan = self.plan(template, parameters)
        report = await self._executor.apply(plan, validated)
        result = ReconcileResult(
            stack_name=self._config.stack_name,
            plan=plan,
            report=report,
            start_time=start_time,
        )

        if report.success and not self._config.dry_run:
            result.outputs = publish_outputs(validated, self._store, self._config.stack_name)
            report.outputs = dict(result.outputs)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def outputs(
        self, template: Template, parameters: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Resolve output values against applied state without applying."""
        validated = self.validate(template, parameters)
        return evaluate_outputs(validated, self._store.list_all())

    def _log_result(self, result: ReconcileResult) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "stack": result.stack_name,
            "duration_seconds": result.duration_seconds,
            "dry_run": self._config.dry_run,
            **{k: v for k, v in result.plan.summary().items() if v},
        }
        if result.success:
            logger.info("Stack applied", extra=extra)
        else:
            extra["failed"] = result.report.failed
            extra["aborted"] = result.report.aborted
            logger.error("Stack apply incomplete", extra=extra)
