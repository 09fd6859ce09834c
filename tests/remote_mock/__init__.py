"""Remote store mock for integration testing.

Provides a scripted RemoteStore that enables executor and end-to-end tests
without a real provider.

Key Features:
- In-memory resources with generated identifiers and attributes
- Readiness simulation (pending for N describe calls)
- Error injection (transient, permanent, hang, never ready) per logical name
- Call timeline and in-flight tracking for ordering and concurrency assertions

Usage:
    from remote_mock import Fault, FaultKind, ScriptedRemoteStore

    remote = ScriptedRemoteStore()
    remote.inject(Fault("create", "TaskDefinition", FaultKind.TRANSIENT, times=None))
    report = await Executor(remote, store, config).apply(plan, validated)
    assert "Service" in report.aborted
"""

from .faults import Fault, FaultKind
from .store import ScriptedRemoteStore

__all__ = [
    "Fault",
    "FaultKind",
    "ScriptedRemoteStore",
]
