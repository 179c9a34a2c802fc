"""
PoolForge provisioning task pipeline.

An ordered, ephemeral list of ProvisioningTask objects with push-style
progress reporting. A task may only start once its predecessor is done.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from poolforge.core.logging import get_logger
from poolforge.core.models import ProvisioningTask, TaskName, TaskStatus

logger = get_logger(__name__)

TaskCallback = Callable[[ProvisioningTask], None]


class TaskOrderError(RuntimeError):
    """Raised when a task is started out of order."""


class TaskPipeline:
    """Fixed-order task list for one provisioning run."""

    def __init__(
        self,
        names: Iterable[TaskName],
        device_id: str | None = None,
        callbacks: Iterable[TaskCallback] = (),
    ) -> None:
        self.device_id = device_id
        self.tasks = [ProvisioningTask(name=name, device_id=device_id) for name in names]
        self._callbacks: list[TaskCallback] = list(callbacks)

    def add_callback(self, callback: TaskCallback) -> None:
        """Add a callback to be notified of every task status change."""
        self._callbacks.append(callback)

    def get(self, name: TaskName) -> ProvisioningTask:
        for task in self.tasks:
            if task.name == name:
                return task
        raise KeyError(f"Task not in pipeline: {name.value}")

    def __contains__(self, name: object) -> bool:
        return any(task.name == name for task in self.tasks)

    @property
    def names(self) -> list[TaskName]:
        return [task.name for task in self.tasks]

    @property
    def current(self) -> ProvisioningTask | None:
        """The task currently running, if any."""
        for task in self.tasks:
            if task.status == TaskStatus.RUNNING:
                return task
        return None

    @property
    def next_pending(self) -> ProvisioningTask | None:
        for task in self.tasks:
            if task.status == TaskStatus.PENDING:
                return task
        return None

    @property
    def is_done(self) -> bool:
        return all(task.status == TaskStatus.DONE for task in self.tasks)

    @property
    def failed(self) -> ProvisioningTask | None:
        for task in self.tasks:
            if task.status == TaskStatus.ERROR:
                return task
        return None

    def start(self, name: TaskName, message: str = "") -> ProvisioningTask:
        """Mark a task running. Its predecessor must already be done."""
        task = self.get(name)
        index = self.tasks.index(task)
        if task.status != TaskStatus.PENDING:
            raise TaskOrderError(f"Task {name.value} is already {task.status.value}")
        if index > 0 and self.tasks[index - 1].status != TaskStatus.DONE:
            previous = self.tasks[index - 1]
            raise TaskOrderError(
                f"Task {name.value} cannot start before {previous.name.value} is done"
            )
        return self._set(task, TaskStatus.RUNNING, message)

    def complete(self, name: TaskName, message: str = "") -> ProvisioningTask:
        task = self.get(name)
        if task.status != TaskStatus.RUNNING:
            raise TaskOrderError(f"Task {name.value} is not running")
        return self._set(task, TaskStatus.DONE, message)

    def run_through(self, name: TaskName, running_message: str, done_message: str) -> None:
        """Report a task as running and then done."""
        self.start(name, running_message)
        self.complete(name, done_message)

    def fail_current(self, message: str) -> ProvisioningTask | None:
        """Mark whichever task is running as failed; later tasks stay pending."""
        task = self.current
        if task is None:
            return None
        return self._set(task, TaskStatus.ERROR, message)

    def _set(self, task: ProvisioningTask, status: TaskStatus, message: str) -> ProvisioningTask:
        task.status = status
        if message:
            task.message = message

        logger.debug(
            "Task status",
            task=task.name.value,
            status=status.value,
            device_id=task.device_id,
            message=task.message,
        )

        snapshot = ProvisioningTask(
            name=task.name,
            status=task.status,
            message=task.message,
            device_id=task.device_id,
        )
        # a broken subscriber must never break the pipeline
        for callback in self._callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning("Task callback error", error=str(e))
        return task
