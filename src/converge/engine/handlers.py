"""
Converge Handler Registry

Deferred handler notifications for one play.

Tasks that report a change notify handlers by name or by ``listen`` topic.
Notifications are queued per host and fired once, in handler declaration
order, when the host's task list is done.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from converge.engine.errors import ParseError, UnknownHandlerError
from converge.engine.playbook import Task
from converge.engine.results import TaskResult

logger = logging.getLogger(__name__)

HandlerExecutor = Callable[[str, Task], Awaitable[TaskResult]]


class HandlerRegistry:
    """
    Per-host pending-handler sets for the handlers of one play.

    Each handler fires at most once per host. Handler state is never shared
    between hosts.
    """

    def __init__(self, handlers: List[Task], executor: Optional[HandlerExecutor] = None):
        """
        Args:
            handlers: Handler tasks in declaration order
            executor: Coroutine that runs a handler on a host and returns its result
        """
        self.handlers = list(handlers)
        self.executor = executor
        self._targets: Dict[str, List[int]] = {}
        names: Set[str] = set()
        for handler in self.handlers:
            if handler.name in names:
                raise ParseError(f"Duplicate handler name '{handler.name}'")
            names.add(handler.name)
        for index, handler in enumerate(self.handlers):
            for key in [handler.name] + handler.listen:
                targets = self._targets.setdefault(key, [])
                if index not in targets:
                    targets.append(index)
        self._pending: Dict[str, Set[int]] = {}
        self._fired: Dict[str, Set[int]] = {}

    def resolve(self, name: str) -> List[Task]:
        """Return the handlers a notification name reaches."""
        if name not in self._targets:
            raise UnknownHandlerError(name)
        return [self.handlers[i] for i in self._targets[name]]

    def notify(self, host: str, name: str) -> None:
        """
        Queue the handlers reached by ``name`` for ``host``.

        Raises:
            UnknownHandlerError: No handler has this name or listens to it
        """
        if name not in self._targets:
            raise UnknownHandlerError(name)
        fired = self._fired.get(host, set())
        pending = self._pending.setdefault(host, set())
        for index in self._targets[name]:
            if index not in fired:
                pending.add(index)
        logger.debug("Host %s notified '%s'", host, name)

    def pending(self, host: str) -> List[str]:
        """Names of the handlers queued for ``host``, in declaration order."""
        return [self.handlers[i].name for i in sorted(self._pending.get(host, ()))]

    async def flush(self, host: str) -> List[TaskResult]:
        """
        Run the handlers queued for ``host``.

        Handlers run in declaration order, each at most once. A handler
        that reports a change may notify further handlers, which run in the
        same flush. A failed handler stops the flush. Calling flush again
        runs only handlers notified since.
        """
        if self.executor is None:
            raise RuntimeError("HandlerRegistry has no executor")

        results: List[TaskResult] = []
        pending = self._pending.setdefault(host, set())
        fired = self._fired.setdefault(host, set())

        while pending:
            index = min(pending)
            pending.discard(index)
            fired.add(index)
            handler = self.handlers[index]

            logger.debug("Running handler '%s' on %s", handler.name, host)
            result = await self.executor(host, handler)
            results.append(result)

            if result.failed and not result.ignored:
                logger.debug("Handler '%s' failed on %s, stopping flush", handler.name, host)
                break

        return results
