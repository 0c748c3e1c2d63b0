"""Task tree engine.

A provisioning plan is a tree of task groups. Sequential groups run their
children in order and stop at the first failing child; parallel groups run
every child at once and wait for all of them. Failures are collected into a
list instead of being raised, so a single run reports every broken branch.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from .errors import CapabilityUnsupported, FailureKind, TaskFailure

logger = logging.getLogger("eksforge.tasks")

INDENT = "    "


class Kind(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class Task:
    """A single named operation against an external system.

    Subclasses implement ``run``; returning means success, raising means
    failure. The engine never inspects anything else.
    """

    name = "unnamed task"

    def run(self) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class FuncTask(Task):
    """Wrap a plain callable as a task."""

    def __init__(self, name: str, fn: Callable[[], None]):
        self.name = name
        self.fn = fn

    def run(self) -> None:
        self.fn()


class TaskGroup:
    """Ordered collection of tasks and sub-groups."""

    def __init__(self, kind: Kind, children: Optional[Iterable["Node"]] = None, label: str = ""):
        self.kind = Kind(kind)
        self.children: List[Node] = list(children or [])
        self.label = label or f"{self.kind.value} tasks"

    @property
    def length(self) -> int:
        return sum(_leaf_count(child) for child in self.children)

    def add(self, child: "Node") -> None:
        self.children.append(child)

    def describe(self, depth: int = 0) -> str:
        pad = INDENT * depth
        count = len(self.children)
        plural = "" if count == 1 else "s"
        lines = [f"{pad}{self.label} [{count} {self.kind.value} task{plural}]"]
        for child in self.children:
            if isinstance(child, TaskTree):
                child = child.root
            if isinstance(child, TaskGroup):
                lines.append(child.describe(depth + 1))
            elif isinstance(child, Task):
                lines.append(f"{pad}{INDENT}{child.describe()}")
            else:
                lines.append(f"{pad}{INDENT}<invalid {type(child).__name__}>")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"<TaskGroup {self.kind.value} {self.label!r} children={len(self.children)}>"


Node = Union[Task, TaskGroup, "TaskTree"]


def _leaf_count(node) -> int:
    if isinstance(node, Task):
        return 1
    if isinstance(node, TaskTree):
        return node.length
    if isinstance(node, TaskGroup):
        return node.length
    return 0


def build(kind: Kind, children: Iterable[Node], label: str = "") -> TaskGroup:
    """Construct a task group. Pure, nothing is executed."""
    return TaskGroup(kind, children, label)


class TaskTree:
    """A root task group that can be grafted onto and executed once."""

    def __init__(self, root: Optional[TaskGroup] = None, kind: Kind = Kind.SEQUENTIAL, label: str = ""):
        self.root = root if root is not None else TaskGroup(kind, label=label)
        self._executed = False

    @property
    def length(self) -> int:
        return self.root.length

    def __len__(self) -> int:
        return self.length

    def append(self, subtree: Node) -> None:
        """Graft ``subtree`` as an extra child of the root group."""
        if self._executed:
            raise RuntimeError(f"cannot append to task tree {self.root.label!r} after execution started")
        if isinstance(subtree, TaskTree):
            if subtree is self:
                raise ValueError("cannot append a task tree to itself")
            subtree = subtree.root
        self.root.add(subtree)

    def describe(self) -> str:
        return self.root.describe()

    def execute(self) -> List[TaskFailure]:
        """Run every reachable task and return the failures.

        An empty list means every leaf task succeeded.
        """
        if self._executed:
            raise RuntimeError(f"task tree {self.root.label!r} has already been executed")
        self._executed = True
        logger.debug("executing task tree %r with %d task(s)", self.root.label, self.length)
        return _execute_node(self.root)


def append(tree: TaskTree, subtree: Node) -> None:
    tree.append(subtree)


def execute(tree: TaskTree) -> List[TaskFailure]:
    return tree.execute()


def describe(tree: Union[TaskTree, TaskGroup]) -> str:
    return tree.describe()


def _execute_node(node) -> List[TaskFailure]:
    if isinstance(node, TaskTree):
        node = node.root
    if isinstance(node, Task):
        return _run_task(node)
    return _execute_group(node)


def _run_task(task: Task) -> List[TaskFailure]:
    logger.debug("running task %r", task.name)
    try:
        task.run()
    except CapabilityUnsupported as e:
        logger.debug("task %r is not supported: %s", task.name, e)
        return [TaskFailure(task.name, e, kind=FailureKind.CAPABILITY_UNSUPPORTED, task=task)]
    except Exception as e:
        logger.debug("task %r failed: %s", task.name, e, exc_info=True)
        return [TaskFailure(task.name, e, task=task)]
    logger.debug("task %r completed", task.name)
    return []


def _execute_group(group: TaskGroup) -> List[TaskFailure]:
    invalid = [child for child in group.children if not isinstance(child, (Task, TaskGroup, TaskTree))]
    if invalid:
        names = ", ".join(type(child).__name__ for child in invalid)
        return [TaskFailure(group.label, TypeError(f"group contains non-task children: {names}"))]
    if not group.children:
        return []

    failures: List[TaskFailure] = []
    if group.kind is Kind.SEQUENTIAL:
        for index, child in enumerate(group.children):
            child_failures = _execute_node(child)
            if child_failures:
                failures.extend(child_failures)
                skipped = len(group.children) - index - 1
                if skipped:
                    logger.debug("skipping %d remaining task(s) in %r", skipped, group.label)
                break
        return failures

    with ThreadPoolExecutor(max_workers=len(group.children)) as executor:
        futures = [executor.submit(_execute_node, child) for child in group.children]
        for future in futures:
            failures.extend(future.result())
    return failures
