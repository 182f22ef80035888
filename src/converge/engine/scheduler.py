"""
Converge Scheduler

Async execution scheduler with fork-style parallelism using asyncio.

Each host runs its whole task list, then its handlers, as one pipeline.
Up to ``forks`` host pipelines run at once; tasks within a host always run
in order, and hosts never wait on each other between tasks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from converge.connections.base import ConnectionFactory
from converge.engine.errors import ConnectivityError, ConvergeError, TemplateTypeError
from converge.engine.handlers import HandlerRegistry
from converge.engine.inventory import Host
from converge.engine.playbook import Play, Task
from converge.engine.results import HostState, PlayResult, TaskResult, TaskStatus
from converge.engine.templating import TemplateEngine, wrap_unsafe
from converge.engine.variables import Tier, VariableBag, VariableManager
from converge.modules.base import ModuleContext, ModuleDispatcher

logger = logging.getLogger(__name__)


class RunCallback:
    """Receives progress events; the default implementation ignores them."""

    def on_play_start(self, play: Play, hosts: List[Host]) -> None:
        pass

    def on_task_start(self, task: Task, host: Host, is_handler: bool = False) -> None:
        pass

    def on_task_result(self, task: Optional[Task], result: TaskResult) -> None:
        pass

    def on_host_state(self, host: Host, state: HostState) -> None:
        pass


@dataclass
class RunContext:
    """Run-wide settings and collaborators shared by every host."""

    templar: TemplateEngine
    dispatcher: ModuleDispatcher
    connection_factory: Optional[ConnectionFactory] = None
    forks: int = 5
    check_mode: bool = False
    diff_mode: bool = False
    loop_fail_fast: bool = False
    force_handlers: bool = False
    tags: List[str] = field(default_factory=list)
    skip_tags: List[str] = field(default_factory=list)
    callback: RunCallback = field(default_factory=RunCallback)
    _cancel_event: Optional[asyncio.Event] = field(default=None, repr=False)

    @property
    def cancel_event(self) -> asyncio.Event:
        if self._cancel_event is None:
            self._cancel_event = asyncio.Event()
        return self._cancel_event

    def cancel(self) -> None:
        """Stop scheduling new tasks; in-flight module calls finish."""
        if not self.cancel_event.is_set():
            logger.info("Run cancelled")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()


@dataclass
class HostContext:
    """Runtime state of a single host during one play. Never shared between hosts."""

    host: Host
    vars: VariableBag
    connection: Any = None  # Connection object (set during execution)
    state: HostState = HostState.PENDING
    results: List[TaskResult] = field(default_factory=list)
    become: bool = False
    become_user: str = "root"
    become_method: str = "sudo"

    @property
    def name(self) -> str:
        return self.host.name

    def add_layer(self, tier: Tier, values: Dict[str, Any], source: str = '') -> None:
        """Extend the host's variables with a new higher-tier layer."""
        self.vars = self.vars.with_layer(tier, values, source)

    def register_result(self, name: str, result: TaskResult) -> None:
        """Register a task result for later use."""
        self.add_layer(Tier.REGISTERED, {name: wrap_unsafe(result.to_registered())}, f"register:{name}")


def select_by_tags(task_tags: List[str], only_tags: List[str], skip_tags: List[str]) -> bool:
    """
    Decide whether a task runs under --tags / --skip-tags.

    'always' runs unless skipped explicitly; 'never' runs only when one of
    the task's tags is requested. 'tagged' and 'untagged' match by presence.
    """
    tags = set(task_tags)

    if skip_tags:
        skip = set(skip_tags)
        if tags & skip:
            return False
        if 'tagged' in skip and tags:
            return False
        if 'untagged' in skip and not tags:
            return False

    if 'never' in tags:
        requested = set(only_tags) - {'all'}
        if not (tags - {'never'}) & requested and 'never' not in requested:
            return False

    if not only_tags or 'all' in only_tags:
        return True

    only = set(only_tags)
    if 'always' in tags:
        return True
    if tags & only:
        return True
    if 'tagged' in only and tags:
        return True
    if 'untagged' in only and not tags:
        return True
    return False


class Scheduler:
    """
    Async scheduler for plays.

    Uses asyncio with a semaphore to limit concurrency (like Ansible's
    forks). A host holds its slot for its whole task list and handler
    flush, so a slow host never delays another host's next task.
    """

    def __init__(self, run: RunContext, variables: VariableManager):
        """
        Initialize the scheduler.

        Args:
            run: Run-wide settings, template engine and dispatcher
            variables: Builds each host's starting variables
        """
        self.run = run
        self.variables = variables
        self.forks = max(1, run.forks)

    async def run_play(
        self,
        play: Play,
        hosts: List[Host],
        failed_hosts: Optional[Set[str]] = None,
    ) -> PlayResult:
        """
        Run a single play.

        Args:
            play: Play object to execute
            hosts: Hosts selected for this play, in inventory order
            failed_hosts: Hosts that failed in an earlier play; they are SKIPPED

        Returns:
            PlayResult with task results for this play
        """
        failed_hosts = failed_hosts or set()
        play_result = PlayResult(play_name=play.name, hosts=[h.name for h in hosts])
        self.run.callback.on_play_start(play, hosts)

        if not hosts:
            logger.warning("No hosts matched for play '%s' (%s)", play.name, play.hosts)
            return play_result

        play_hosts = [h.name for h in hosts if h.name not in failed_hosts]
        contexts: Dict[str, HostContext] = {}

        async def run_handler(host_name: str, handler: Task) -> TaskResult:
            ctx = contexts[host_name]
            result = await self._run_task(handler, ctx, handlers, is_handler=True)
            self._record(ctx, handler, result)
            return result

        handlers = HandlerRegistry(play.handlers, executor=run_handler)

        for host in hosts:
            if host.name in failed_hosts:
                play_result.host_states[host.name] = HostState.SKIPPED
                self.run.callback.on_host_state(host, HostState.SKIPPED)
                continue
            contexts[host.name] = HostContext(
                host=host,
                vars=self.variables.effective_vars(
                    host,
                    play,
                    play_hosts=play_hosts,
                    check_mode=self.run.check_mode,
                ),
                become=play.become,
                become_user=play.become_user,
                become_method=play.become_method,
            )

        semaphore = asyncio.Semaphore(self.forks)

        async def run_with_semaphore(ctx: HostContext) -> None:
            async with semaphore:
                await self._run_host(play, ctx, handlers)

        ordered = list(contexts.values())
        outcomes = await asyncio.gather(
            *[run_with_semaphore(ctx) for ctx in ordered],
            return_exceptions=True,
        )

        for ctx, outcome in zip(ordered, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Unexpected error on %s: %s", ctx.name, outcome, exc_info=outcome)
                result = self._error_result(ctx, "internal error", outcome)
                ctx.results.append(result)
                ctx.state = HostState.FAILED
            for result in ctx.results:
                play_result.add_result(result)
            play_result.host_states[ctx.name] = ctx.state

        # Keep inventory order for the report
        play_result.host_states = {
            h.name: play_result.host_states[h.name] for h in hosts if h.name in play_result.host_states
        }
        return play_result

    async def _run_host(self, play: Play, ctx: HostContext, handlers: HandlerRegistry) -> None:
        """Run the task list and then the handlers of one host."""
        if self.run.cancelled:
            self._set_state(ctx, HostState.CANCELLED)
            return

        self._set_state(ctx, HostState.RUNNING)
        try:
            if self.run.connection_factory is not None:
                try:
                    ctx.connection = await self.run.connection_factory(ctx.host)
                except ConvergeError as e:
                    result = self._error_result(ctx, "connect", e)
                    self._record(ctx, None, result)
                    self._set_state(ctx, HostState.FAILED)
                    return

            completed = await self._run_tasks(play.tasks, ctx, handlers)

            if self.run.cancelled:
                self._set_state(ctx, HostState.CANCELLED)
                return

            if completed or play.force_handlers or self.run.force_handlers:
                for result in await handlers.flush(ctx.name):
                    if result.failed and not result.ignored:
                        self._set_state(ctx, HostState.FAILED)
            elif handlers.pending(ctx.name):
                logger.info("Not running handlers %s on failed host %s", handlers.pending(ctx.name), ctx.name)

            if self.run.cancelled and ctx.state == HostState.RUNNING:
                self._set_state(ctx, HostState.CANCELLED)
            elif ctx.state == HostState.RUNNING:
                self._set_state(ctx, HostState.COMPLETED)
        finally:
            await self._close_connection(ctx)

    async def _run_tasks(self, tasks: List[Task], ctx: HostContext, handlers: HandlerRegistry) -> bool:
        """Run tasks in order; return False if the host stopped early."""
        for task in tasks:
            if self.run.cancelled:
                return False

            if not select_by_tags(task.tags, self.run.tags, self.run.skip_tags):
                continue

            result = await self._run_task(task, ctx, handlers)
            self._record(ctx, task, result)

            if result.failed and not result.ignored:
                self._set_state(ctx, HostState.FAILED)
                return False

        return True

    async def _run_task(
        self,
        task: Task,
        ctx: HostContext,
        handlers: HandlerRegistry,
        is_handler: bool = False,
    ) -> TaskResult:
        """Execute a single task (or handler) on a single host."""
        self.run.callback.on_task_start(task, ctx.host, is_handler)
        name = self._task_name(task, ctx.vars)
        check_mode = self.run.check_mode if task.check_mode is None else task.check_mode

        if task.loop is not None:
            result = await self._run_loop(task, ctx, name, check_mode)
        else:
            result = await self._run_once(task, ctx, ctx.vars, name, check_mode)

        if task.register:
            ctx.register_result(task.register, result)

        if result.changed and not result.failed and task.notify:
            try:
                for notification in task.notify:
                    handlers.notify(ctx.name, str(self.run.templar.render(notification, ctx.vars)))
            except ConvergeError as e:
                result = self._error_result(ctx, name, e)

        return result

    async def _run_once(
        self,
        task: Task,
        ctx: HostContext,
        variables: VariableBag,
        name: str,
        check_mode: bool,
        item: Any = None,
    ) -> TaskResult:
        """Evaluate when, render, dispatch and post-process one invocation."""
        templar = self.run.templar

        try:
            if not templar.evaluate_when(task.when, variables):
                return TaskResult(
                    host=ctx.name,
                    task_name=name,
                    status=TaskStatus.SKIPPED,
                    msg="Conditional result was False",
                    item=item,
                )

            params = templar.render_recursive(task.args, variables)
            module_context = ModuleContext(
                host=ctx.host,
                vars=variables,
                templar=templar,
                connection=ctx.connection,
                check_mode=check_mode,
                diff_mode=self.run.diff_mode,
                become=ctx.become if task.become is None else bool(task.become),
                become_user=task.become_user or ctx.become_user,
                become_method=task.become_method or ctx.become_method,
            )
            module_result = await self.run.dispatcher.invoke(task.module, params, module_context)
            result = module_result.to_task_result(ctx.name, name)
        except ConvergeError as e:
            result = self._error_result(ctx, name, e)

        result.item = item
        result = self._apply_conditions(task, result, variables)

        if result.failed and task.ignore_errors and not result.unreachable:
            result.ignored = True

        if result.ok:
            facts = result.results.get('ansible_facts')
            if isinstance(facts, dict) and facts:
                ctx.add_layer(Tier.REGISTERED, facts, f"facts:{name}")

        return result

    def _apply_conditions(self, task: Task, result: TaskResult, variables: VariableBag) -> TaskResult:
        """Apply changed_when / failed_when to a module result."""
        if task.changed_when is None and task.failed_when is None:
            return result
        if result.status == TaskStatus.SKIPPED or result.unreachable:
            return result

        check_vars = variables
        if task.register:
            check_vars = variables.with_layer(
                Tier.REGISTERED,
                {task.register: wrap_unsafe(result.to_registered())},
                f"register:{task.register}",
            )

        templar = self.run.templar
        try:
            if task.changed_when is not None:
                result.changed = templar.evaluate_when(task.changed_when, check_vars)
                if result.status != TaskStatus.FAILED:
                    result.status = TaskStatus.CHANGED if result.changed else TaskStatus.OK

            if task.failed_when is not None:
                if templar.evaluate_when(task.failed_when, check_vars):
                    result.status = TaskStatus.FAILED
                    result.msg = result.msg or "failed_when condition was true"
                elif result.status == TaskStatus.FAILED:
                    result.status = TaskStatus.CHANGED if result.changed else TaskStatus.OK
                    result.error_kind = None
        except ConvergeError as e:
            return self._error_result_from(result, e)

        return result

    async def _run_loop(self, task: Task, ctx: HostContext, name: str, check_mode: bool) -> TaskResult:
        """Run one independent invocation per loop item."""
        templar = self.run.templar

        try:
            items = templar.render_recursive(task.loop, ctx.vars)
        except ConvergeError as e:
            return self._error_result(ctx, name, e)

        if items is None:
            items = []
        if isinstance(items, dict) or not isinstance(items, list):
            error = TemplateTypeError(
                f"Invalid data passed to 'loop', it requires a list, got {type(items).__name__}",
                template=str(task.loop),
            )
            return self._error_result(ctx, name, error)

        if not items:
            return TaskResult(
                host=ctx.name,
                task_name=name,
                status=TaskStatus.SKIPPED,
                msg="No items in the list",
                loop_results=[],
            )

        fail_fast = self.run.loop_fail_fast if task.loop_fail_fast is None else task.loop_fail_fast
        loop_results: List[TaskResult] = []
        length = len(items)

        for index, item in enumerate(items):
            if self.run.cancelled:
                break

            loop_vars: Dict[str, Any] = {
                task.loop_var: item,
                'ansible_loop': {
                    'index': index + 1,
                    'index0': index,
                    'revindex': length - index,
                    'revindex0': length - index - 1,
                    'first': index == 0,
                    'last': index == length - 1,
                    'length': length,
                },
            }
            if task.index_var:
                loop_vars[task.index_var] = index
            variables = ctx.vars.with_layer(Tier.LOOP, loop_vars, f"loop:{task.loop_var}")

            result = await self._run_once(task, ctx, variables, name, check_mode, item=item)
            loop_results.append(result)
            self.run.callback.on_task_result(task, result)

            if result.failed and fail_fast:
                logger.debug("Loop of '%s' on %s stopped after item %d", name, ctx.name, index)
                break

        return self._combine_loop(task, ctx, name, loop_results)

    def _combine_loop(self, task: Task, ctx: HostContext, name: str, loop_results: List[TaskResult]) -> TaskResult:
        failed = [r for r in loop_results if r.failed]
        changed = any(r.changed and not r.failed for r in loop_results)

        if failed:
            status = TaskStatus.FAILED
            msg = "One or more items failed"
        elif loop_results and all(r.status == TaskStatus.SKIPPED for r in loop_results):
            status = TaskStatus.SKIPPED
            msg = "All items skipped"
        else:
            status = TaskStatus.CHANGED if changed else TaskStatus.OK
            msg = "All items completed"

        unreachable = any(r.unreachable for r in failed)
        return TaskResult(
            host=ctx.name,
            task_name=name,
            status=status,
            changed=changed,
            msg=msg,
            error_kind=failed[0].error_kind if failed else None,
            unreachable=unreachable,
            ignored=bool(failed) and task.ignore_errors and not unreachable,
            loop_results=loop_results,
        )

    def _task_name(self, task: Task, variables: VariableBag) -> str:
        try:
            name = str(self.run.templar.render(task.name, variables))
        except ConvergeError:
            name = task.name
        if task.role:
            return f"{task.role} : {name}"
        return name

    def _record(self, ctx: HostContext, task: Optional[Task], result: TaskResult) -> None:
        ctx.results.append(result)
        if task is not None and task.loop is not None and result.loop_results:
            # Items were reported as they ran
            return
        self.run.callback.on_task_result(task, result)

    def _set_state(self, ctx: HostContext, state: HostState) -> None:
        ctx.state = state
        self.run.callback.on_host_state(ctx.host, state)

    def _error_result(self, ctx: HostContext, task_name: str, error: BaseException) -> TaskResult:
        return TaskResult(
            host=ctx.name,
            task_name=task_name,
            status=TaskStatus.FAILED,
            msg=str(error),
            error_kind=type(error).__name__,
            unreachable=isinstance(error, ConnectivityError),
        )

    def _error_result_from(self, result: TaskResult, error: BaseException) -> TaskResult:
        result.status = TaskStatus.FAILED
        result.msg = str(error)
        result.error_kind = type(error).__name__
        return result

    async def _close_connection(self, ctx: HostContext) -> None:
        """Close the host's connection."""
        if ctx.connection is None:
            return
        try:
            await ctx.connection.close()
        except (OSError, ConvergeError) as e:
            logger.debug("Error closing connection to %s: %s", ctx.name, e)
        ctx.connection = None
