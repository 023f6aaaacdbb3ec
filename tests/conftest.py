from __future__ import annotations

from datetime import datetime, timezone

import pytest
import structlog

from planner_taskgraph.core.collaborators import StaticMembership
from planner_taskgraph.core.model import Project, ProjectMember
from planner_taskgraph.core.service import BoardService
from planner_taskgraph.core.store.graph_store import GraphStore


PROJECT_ID = "p1"
CREATED_AT = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class RecordingSink:
    def __init__(self):
        self.events = []

    def task_created(self, event):
        self.events.append(("task_created", event))

    def task_completed(self, event):
        self.events.append(("task_completed", event))

    def task_unblocked(self, event):
        self.events.append(("task_unblocked", event))

    def milestone_completed(self, event):
        self.events.append(("milestone_completed", event))

    def kinds(self):
        return [k for k, _ in self.events]


@pytest.fixture(autouse=True)
def _reset_structlog():
    # CLI runs point structlog at the runner's stderr; don't let that leak.
    yield
    structlog.reset_defaults()


@pytest.fixture
def membership():
    m = StaticMembership(mentors=["mentor"])
    m.set_members(
        PROJECT_ID,
        [
            ProjectMember(user_id="alice", role="Lead", is_admin=True, joined_at=CREATED_AT),
            ProjectMember(user_id="bob", role="Backend", joined_at=CREATED_AT),
            ProjectMember(user_id="dana", role="Backend", joined_at=CREATED_AT),
            ProjectMember(
                user_id="carol",
                role="Frontend",
                joined_at=CREATED_AT,
                left_at=datetime(2026, 2, 1, tzinfo=timezone.utc),
            ),
        ],
    )
    return m


@pytest.fixture
def store(membership):
    s = GraphStore(membership)
    s.add_project(Project(id=PROJECT_ID, name="Campus Events", created_at=CREATED_AT, duration_days=60))
    return s


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def board(store, membership, sink):
    return BoardService(store, membership, sink)
