from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Generator

log = logging.getLogger(__name__)

TaskGen = Generator[Any, None, Any]


class Task:
    """Resumable unit of work wrapping a generator.

    Each `step()` runs the generator up to its next `yield`; the generator's
    return value becomes `result`. A failure is stored in `error` and logged.
    """

    def __init__(self, gen: TaskGen, name: str = "task", on_done: Callable[["Task"], None] | None = None) -> None:
        self._gen = gen
        self.name = name
        self.on_done = on_done
        self.done = False
        self.cancelled = False
        self.result: Any = None
        self.error: BaseException | None = None
        self.steps = 0

    def __repr__(self) -> str:
        state = "done" if self.done else "pending"
        return f"Task({self.name!r}, {state}, steps={self.steps})"

    def step(self) -> bool:
        """Advance once. Returns True while the task has more work."""
        if self.done:
            return False
        self.steps += 1
        try:
            next(self._gen)
            return True
        except StopIteration as stop:
            self.result = stop.value
            self._finish()
        except Exception as e:
            self.error = e
            log.exception("task %s failed after %d steps", self.name, self.steps)
            self._finish()
        return False

    def cancel(self) -> None:
        if self.done:
            return
        self.cancelled = True
        self._gen.close()
        self._finish()

    def run(self) -> Any:
        """Drive to completion on the caller's stack; re-raises a task failure."""
        while self.step():
            pass
        if self.error is not None:
            raise self.error
        return self.result

    def _finish(self) -> None:
        self.done = True
        if self.on_done is not None:
            self.on_done(self)


class TaskScheduler:
    """Single-threaded round-robin scheduler for cooperative tasks.

    `step()` gives every live task exactly one step, so the work done per
    call is bounded by the tasks' own yield granularity.
    """

    def __init__(self) -> None:
        self._tasks: deque[Task] = deque()

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def pending(self) -> list[Task]:
        return list(self._tasks)

    def spawn(self, gen: TaskGen, name: str = "task", on_done: Callable[[Task], None] | None = None) -> Task:
        task = Task(gen, name=name, on_done=on_done)
        self._tasks.append(task)
        return task

    def step(self) -> int:
        """Step each pending task once; returns how many tasks are still pending."""
        for _ in range(len(self._tasks)):
            task = self._tasks.popleft()
            if task.step():
                self._tasks.append(task)
        return len(self._tasks)

    def run_until_idle(self, max_steps: int | None = None) -> int:
        n = 0
        while self._tasks and (max_steps is None or n < max_steps):
            self.step()
            n += 1
        return n

    def cancel_all(self) -> None:
        while self._tasks:
            self._tasks.popleft().cancel()
