from __future__ import annotations

from collections import deque
from typing import Callable, Iterator

from planner_taskgraph.core.errors import Conflict, InvalidState, NotFound


class DependencyGraph:
    """Directed "task depends on task" relation for one project.

    Adjacency is keyed by task id in both directions. The relation is kept
    acyclic: `add_edge` refuses any edge that would close a cycle.
    """

    def __init__(self) -> None:
        self._out: dict[str, set[str]] = {}
        self._in: dict[str, set[str]] = {}

    def add_edge(self, task_id: str, depends_on_task_id: str) -> None:
        if task_id == depends_on_task_id:
            raise InvalidState(
                code="E_SELF_DEPENDENCY",
                message="task cannot depend on itself",
                entity=f"task:{task_id}",
            )
        if depends_on_task_id in self._out.get(task_id, ()):
            raise Conflict(
                code="E_DUPLICATE_DEPENDENCY",
                message=f"dependency already exists: {task_id} -> {depends_on_task_id}",
                entity=f"task:{task_id}",
            )
        # A new edge task -> dep closes a cycle iff task is already reachable from dep.
        if self.reaches(depends_on_task_id, task_id):
            raise InvalidState(
                code="E_CYCLE_DETECTED",
                message=f"dependency would create a cycle: {task_id} -> {depends_on_task_id}",
                entity=f"task:{task_id}",
            )
        self._out.setdefault(task_id, set()).add(depends_on_task_id)
        self._in.setdefault(depends_on_task_id, set()).add(task_id)

    def remove_edge(self, task_id: str, depends_on_task_id: str) -> None:
        targets = self._out.get(task_id)
        if not targets or depends_on_task_id not in targets:
            raise NotFound(
                code="E_DEPENDENCY_NOT_FOUND",
                message=f"no dependency {task_id} -> {depends_on_task_id}",
                entity=f"task:{task_id}",
            )
        targets.discard(depends_on_task_id)
        if not targets:
            del self._out[task_id]
        sources = self._in[depends_on_task_id]
        sources.discard(task_id)
        if not sources:
            del self._in[depends_on_task_id]

    def remove_node(self, task_id: str) -> None:
        """Drop every edge touching `task_id` (used when a task is deleted)."""
        for dep in self._out.pop(task_id, set()):
            sources = self._in.get(dep)
            if sources is not None:
                sources.discard(task_id)
                if not sources:
                    del self._in[dep]
        for src in self._in.pop(task_id, set()):
            targets = self._out.get(src)
            if targets is not None:
                targets.discard(task_id)
                if not targets:
                    del self._out[src]

    def has_edge(self, task_id: str, depends_on_task_id: str) -> bool:
        return depends_on_task_id in self._out.get(task_id, ())

    def depends_on(self, task_id: str) -> list[str]:
        return sorted(self._out.get(task_id, ()))

    def dependents(self, task_id: str) -> list[str]:
        return sorted(self._in.get(task_id, ()))

    def edges(self) -> Iterator[tuple[str, str]]:
        for task_id in sorted(self._out):
            for dep in sorted(self._out[task_id]):
                yield task_id, dep

    def is_satisfied(self, task_id: str, status_of: Callable[[str], str]) -> bool:
        return all(status_of(dep) == "Done" for dep in self._out.get(task_id, ()))

    def reaches(self, start: str, goal: str) -> bool:
        """BFS over outgoing edges; True when `goal` is reachable from `start`."""
        if start == goal:
            return True
        q: deque[str] = deque([start])
        seen: set[str] = {start}
        while q:
            cur = q.popleft()
            for nxt in self._out.get(cur, ()):
                if nxt == goal:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    q.append(nxt)
        return False

    def find_cycles(self) -> list[tuple[str, str]]:
        """Full DFS cycle scan. Returns (task_id, message) per distinct cycle.

        `add_edge` never lets a cycle in; this exists for graphs loaded from
        outside (workspace files, working copies under revalidation).
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        nodes = set(self._out) | set(self._in)
        state: dict[str, int] = {nid: WHITE for nid in sorted(nodes)}
        stack: list[str] = []
        emitted: set[str] = set()
        out: list[tuple[str, str]] = []

        def dfs(u: str) -> None:
            state[u] = GRAY
            stack.append(u)
            for v in sorted(self._out.get(u, ())):
                if state[v] == GRAY:
                    cycle = stack[stack.index(v):] + [v]
                    key = "->".join(cycle)
                    if key not in emitted:
                        emitted.add(key)
                        out.append((u, "dependency cycle detected: " + " -> ".join(cycle)))
                elif state[v] == WHITE:
                    dfs(v)
            stack.pop()
            state[u] = BLACK

        for nid in list(state):
            if state[nid] == WHITE:
                dfs(nid)
        return out

    def load_edge(self, task_id: str, depends_on_task_id: str) -> None:
        # Loader path: record the edge as stored, leaving judgement to the checker.
        self._out.setdefault(task_id, set()).add(depends_on_task_id)
        self._in.setdefault(depends_on_task_id, set()).add(task_id)
