"""Dependency-respecting concurrent execution of delegated sections."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Sequence

from agent_engine.events import DagProgress
from agent_engine.policies import auto_select_tier
from agent_engine.schemas import AddedSection, SubAgentResult, SubAgentTask
from agent_engine.subagents.blackboard import Blackboard, build_context
from agent_engine.subagents.runner import SubAgentRunner
from agent_engine.subagents.streaming import DEFAULT_FLUSH_CHARS, DEFAULT_FLUSH_INTERVAL, TokenBuffer

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10


class DelegationConfigError(Exception):
    """Raised when a delegation is rejected before any task starts."""

    pass


class CyclicDependencyError(DelegationConfigError):
    """Raised when task dependencies form a cycle."""

    pass


class SchedulerError(Exception):
    """Raised when the scheduler itself cannot run the delegation."""

    pass


class _NullProgress:
    def on_task_start(self, task_id, title, tier) -> None:
        pass

    def on_task_tokens(self, task_id, text) -> None:
        pass

    def on_task_complete(self, task_id, title, success, completed, total) -> None:
        pass

    def on_section_added(self, section) -> None:
        pass


def resolve_dependencies(tasks: Sequence[SubAgentTask]) -> dict[str, set[str]]:
    """Validate a task list and return each task's known dependency ids.

    Raises:
        DelegationConfigError: No tasks or duplicate ids
        CyclicDependencyError: Dependencies form a cycle
    """
    if not tasks:
        raise DelegationConfigError("At least one section is required to delegate.")

    ids: set[str] = set()
    for task in tasks:
        if task.id in ids:
            raise DelegationConfigError(f'Duplicate section id "{task.id}". Section ids must be unique.')
        ids.add(task.id)

    deps: dict[str, set[str]] = {}
    for task in tasks:
        known = set()
        for dep in task.depends_on:
            if dep in ids:
                known.add(dep)
            else:
                logger.warning(f'Section "{task.id}" depends on unknown id "{dep}"; treating it as satisfied')
        deps[task.id] = known

    # Kahn's algorithm; anything left unordered sits on a cycle
    remaining = {task_id: set(d) for task_id, d in deps.items()}
    progressed = True
    while remaining and progressed:
        ready = [task_id for task_id, d in remaining.items() if not d]
        progressed = bool(ready)
        for task_id in ready:
            del remaining[task_id]
        for d in remaining.values():
            d.difference_update(ready)
    if remaining:
        cycle = ", ".join(t.id for t in tasks if t.id in remaining)
        raise CyclicDependencyError(f"Circular dependency detected among sections: {cycle}")

    return deps


class DagExecutor:
    """Runs a validated task graph with maximum safe parallelism.

    A task starts as soon as every dependency has a result; there is no
    level barrier. Task exceptions become failed results; only
    SchedulerError aborts the whole run.
    """

    def __init__(
        self,
        runner: SubAgentRunner,
        progress: DagProgress | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        flush_chars: int = DEFAULT_FLUSH_CHARS,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    ):
        self.runner = runner
        self.progress = progress or _NullProgress()
        self.max_concurrent = max_concurrent
        self.flush_chars = flush_chars
        self.flush_interval = flush_interval

    async def run(self, tasks: Sequence[SubAgentTask]) -> list[SubAgentResult]:
        """Execute every task and return results in submission order."""
        deps = resolve_dependencies(tasks)
        blackboard = Blackboard()
        semaphore = asyncio.Semaphore(self.max_concurrent)
        results: dict[str, SubAgentResult] = {}
        pending = {task.id: task for task in tasks}
        running: dict[asyncio.Future, str] = {}
        total = len(tasks)
        counter = itertools.count(1)

        def start_ready() -> None:
            for task_id, task in list(pending.items()):
                if deps[task_id] <= results.keys():
                    del pending[task_id]
                    running[asyncio.ensure_future(self._run_task(task, blackboard, semaphore, counter, total))] = task_id

        start_ready()
        try:
            while running:
                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for future in done:
                    task_id = running.pop(future)
                    results[task_id] = future.result()
                start_ready()
        except BaseException:
            for future in running:
                future.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        if pending:
            raise SchedulerError(f"Sections never became ready: {', '.join(pending)}")
        return [results[task.id] for task in tasks]

    async def _run_task(
        self,
        task: SubAgentTask,
        blackboard: Blackboard,
        semaphore: asyncio.Semaphore,
        counter: itertools.count,
        total: int,
    ) -> SubAgentResult:
        async with semaphore:
            tier = auto_select_tier(task)
            logger.info(f"Starting section {task.id} ({task.title}) on {tier.value} tier")
            self.progress.on_task_start(task.id, task.title, tier)

            buffer = TokenBuffer(task.id, self.progress.on_task_tokens, self.flush_chars, self.flush_interval)
            added: list[AddedSection] = []

            def on_section(title: str, content: str) -> None:
                section = AddedSection(id=f"{task.id}_addendum_{len(added) + 1}", title=title, content=content)
                added.append(section)
                self.progress.on_section_added(section)

            context = build_context(task, blackboard)
            try:
                result = await self.runner.run(task, tier, context, buffer.feed, on_section)
            except SchedulerError:
                raise
            except Exception as e:
                logger.warning(f"Section {task.id} failed: {e}")
                result = SubAgentResult(
                    task_id=task.id,
                    title=task.title,
                    success=False,
                    content=f"Error executing task: {e}",
                    model_used=tier,
                )
            finally:
                buffer.close()

            result = result.model_copy(update={"added_sections": added})
            blackboard.write(task.id, result.content, task.title, success=result.success)

            completed = next(counter)
            logger.info(f"Finished section {task.id} (success={result.success}, {completed}/{total})")
            self.progress.on_task_complete(task.id, task.title, result.success, completed, total)
            return result
