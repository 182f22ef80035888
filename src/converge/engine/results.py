"""
Converge Result Classes

Data structures for task, play, and playbook execution results.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import json

from converge.engine.errors import ExitCode


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


class HostState(Enum):
    """Lifecycle of a host within one play."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class TaskResult:
    """Result of executing a single task (or one loop item) on a single host."""

    host: str
    task_name: str
    status: TaskStatus
    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    # Additional module-specific results
    results: Dict[str, Any] = field(default_factory=dict)
    # Exception class name when the failure came from an error, e.g. ModuleError
    error_kind: Optional[str] = None
    # Failure came from the connection provider
    unreachable: bool = False
    # Failure tolerated by ignore_errors
    ignored: bool = False
    # The loop item this result belongs to
    item: Any = None
    # For loop results
    loop_results: Optional[List['TaskResult']] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: Dict[str, Any] = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
        }
        if self.stdout:
            result["stdout"] = self.stdout
        if self.stderr:
            result["stderr"] = self.stderr
        if self.msg:
            result["msg"] = self.msg
        if self.results:
            result["results"] = self.results
        if self.error_kind:
            result["error_kind"] = self.error_kind
        if self.unreachable:
            result["unreachable"] = True
        if self.ignored:
            result["ignored"] = True
        if self.item is not None:
            result["item"] = self.item
        if self.loop_results:
            result["loop_results"] = [r.to_dict() for r in self.loop_results]
        return result

    def to_registered(self) -> Dict[str, Any]:
        """Shape the result the way ``register:`` exposes it to later tasks."""
        registered: Dict[str, Any] = dict(self.results)
        registered.update({
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.status == TaskStatus.SKIPPED,
            "rc": self.rc,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdout_lines": self.stdout.splitlines(),
            "stderr_lines": self.stderr.splitlines(),
            "msg": self.msg,
        })
        if self.unreachable:
            registered["unreachable"] = True
        if self.item is not None:
            registered["item"] = self.item
        if self.loop_results is not None:
            registered["results"] = [r.to_registered() for r in self.loop_results]
        return registered

    @property
    def failed(self) -> bool:
        """Check if the task failed."""
        return self.status == TaskStatus.FAILED

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)


@dataclass
class HostStats:
    """Statistics for a single host across all tasks."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        """Record a task result."""
        if result.status == TaskStatus.OK:
            self.ok += 1
        elif result.status == TaskStatus.CHANGED:
            self.changed += 1
        elif result.status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif result.ignored:
            self.ignored += 1
        elif result.unreachable:
            self.unreachable += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "ignored": self.ignored,
        }

    def merge(self, other: 'HostStats') -> None:
        """Merge another HostStats into this one."""
        self.ok += other.ok
        self.changed += other.changed
        self.failed += other.failed
        self.skipped += other.skipped
        self.unreachable += other.unreachable
        self.ignored += other.ignored

    @property
    def has_failures(self) -> bool:
        """Check if host has any failures."""
        return self.failed > 0 or self.unreachable > 0


@dataclass
class PlayResult:
    """Result of executing a single play."""

    play_name: str
    hosts: List[str]
    task_results: List[TaskResult] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)
    host_states: Dict[str, HostState] = field(default_factory=dict)

    def add_result(self, result: TaskResult) -> None:
        """Add a task result."""
        self.task_results.append(result)

        if result.host not in self.host_stats:
            self.host_stats[result.host] = HostStats(result.host)
        self.host_stats[result.host].record(result)

    def results_for(self, host: str) -> List[TaskResult]:
        return [r for r in self.task_results if r.host == host]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "host_states": {h: s.value for h, s in self.host_states.items()},
            "tasks": [r.to_dict() for r in self.task_results],
            "stats": {h: s.to_dict() for h, s in self.host_stats.items()},
        }

    @property
    def failed_hosts(self) -> List[str]:
        return [h for h, s in self.host_states.items() if s == HostState.FAILED]

    @property
    def has_failures(self) -> bool:
        """Check if any host failed in this play."""
        return bool(self.failed_hosts) or any(s.has_failures for s in self.host_stats.values())

    @property
    def cancelled(self) -> bool:
        return any(s == HostState.CANCELLED for s in self.host_states.values())


@dataclass
class PlaybookResult:
    """Result of executing an entire playbook."""

    playbook_path: str
    play_results: List[PlayResult] = field(default_factory=list)
    cancelled: bool = False

    def add_play_result(self, result: PlayResult) -> None:
        """Add a play result."""
        self.play_results.append(result)

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Get aggregated stats for all hosts across all plays."""
        final_stats: Dict[str, HostStats] = {}

        for play_result in self.play_results:
            for host, stats in play_result.host_stats.items():
                if host not in final_stats:
                    final_stats[host] = HostStats(host)
                final_stats[host].merge(stats)

        return final_stats

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "playbook": self.playbook_path,
            "plays": [p.to_dict() for p in self.play_results],
            "stats": {h: s.to_dict() for h, s in self.get_final_stats().items()},
            "cancelled": self.cancelled,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @property
    def success(self) -> bool:
        """Check if the entire playbook succeeded."""
        return not self.cancelled and not any(p.has_failures for p in self.play_results)

    @property
    def exit_code(self) -> int:
        """Get appropriate exit code."""
        if self.cancelled:
            return int(ExitCode.INTERRUPTED)
        return int(ExitCode.SUCCESS) if self.success else int(ExitCode.HOST_FAILED)
