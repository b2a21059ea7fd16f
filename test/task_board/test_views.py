"""
Tests for the page-level views: channel lifecycle, action toasts and
navigation results.
"""

from datetime import date

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.auth import AuthorizationContext
from task_board.drag import DropResult
from task_board.errors import AuthorizationError, NotFoundError
from task_board.mentions import format_mention
from task_board.models import Profile, TaskStatus, UserRole
from task_board.views import AdminUsersView, CalendarView, DashboardView, ProjectView, TaskDetailView

from conftest import MEMBER_ID, PM_ID, settle


class TestProjectView:

    @pytest.mark.asyncio
    async def test_open_loads_board(self, backend, project_id, pm_auth, toasts):
        await backend.insert_task(project_id, {"title": "Existing"}, PM_ID)
        view = ProjectView(backend, pm_auth, toasts)
        project = await view.open_project_view(project_id)

        assert project.name == "Website"
        assert [t.title for t in view.board.todo] == ["Existing"]
        assert {p.id for p in view.profiles} == {PM_ID, MEMBER_ID}
        view.close_project_view()
        assert backend.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_switching_projects_tears_down_first_channel(self, backend, seeded, project_id, pm_auth):
        other = seeded["db"].create_project("Other", None, PM_ID)
        view = ProjectView(backend, pm_auth)
        await view.open_project_view(project_id)
        first_store = view.store
        await view.open_project_view(other["id"])
        assert backend.feed.subscriber_count == 1

        await backend.insert_task(project_id, {"title": "Old project"}, PM_ID)
        await backend.insert_task(other["id"], {"title": "New project"}, PM_ID)
        await settle(view.adapter)

        assert [t.title for t in view.store] == ["New project"]
        assert len(first_store) == 0
        view.close_project_view()

    @pytest.mark.asyncio
    async def test_missing_project_redirects_home(self, backend, pm_auth, toasts):
        view = ProjectView(backend, pm_auth, toasts)
        with pytest.raises(NotFoundError) as exc_info:
            await view.open_project_view("ghost")
        assert exc_info.value.redirect_to == "/"
        assert toasts.last.title == "Not found"
        assert backend.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_create_task_and_drag(self, backend, project_id, pm_auth, toasts):
        view = ProjectView(backend, pm_auth, toasts)
        await view.open_project_view(project_id)
        view.update_view_state(create_task_dialog_open=True)

        task = await view.create_task({"title": "Draft release notes"})
        assert toasts.last.title == "Task created"
        assert not view.view_state.create_task_dialog_open
        assert view.board.find(task.id) is not None

        view.drag.start(task.id)
        outcome = await view.drag.release("completed")
        assert outcome.result == DropResult.MOVED
        assert [t.id for t in view.board.completed] == [task.id]

        await settle(view.adapter)
        assert len(view.store) == 1
        view.close_project_view()

    @pytest.mark.asyncio
    async def test_invalid_task_form_toasts_validation(self, backend, project_id, pm_auth, toasts):
        view = ProjectView(backend, pm_auth, toasts)
        await view.open_project_view(project_id)
        assert await view.create_task({"title": ""}) is None
        assert toasts.last.title == "Validation error"
        assert len(view.store) == 0
        view.close_project_view()

    @pytest.mark.asyncio
    async def test_search_filter_and_stats(self, backend, project_id, pm_auth):
        await backend.insert_task(project_id, {"title": "Fix bug in parser", "assigned_to": MEMBER_ID}, PM_ID)
        await backend.insert_task(project_id, {"title": "Write docs"}, PM_ID)
        view = ProjectView(backend, pm_auth)
        await view.open_project_view(project_id)

        view.update_view_state(search_query="bug")
        assert [t.title for t in view.board.all_tasks()] == ["Fix bug in parser"]
        assert view.stats.total == 2
        assert view.stats.by_assignee == {"Max Member": 1}
        view.close_project_view()

    @pytest.mark.asyncio
    async def test_member_cannot_edit_project(self, backend, project_id, member_auth, toasts):
        view = ProjectView(backend, member_auth, toasts)
        await view.open_project_view(project_id)
        assert await view.edit_project({"name": "Hijacked"}) is None
        assert toasts.last.title == "Action not allowed"
        view.close_project_view()

    @pytest.mark.asyncio
    async def test_delete_project_navigates_home(self, backend, project_id, pm_auth, toasts):
        view = ProjectView(backend, pm_auth, toasts)
        await view.open_project_view(project_id)
        assert await view.delete_project() == "/"
        assert toasts.last.title == "Project deleted"
        assert view.adapter is None

    @pytest.mark.asyncio
    async def test_actions_before_open_toast_not_found(self, backend, pm_auth, toasts):
        view = ProjectView(backend, pm_auth, toasts)
        assert await view.create_task({"title": "Too early"}) is None
        assert toasts.last.title == "Not found"
        assert await view.edit_project({"name": "Renamed"}) is None
        assert await view.delete_project() is None
        assert len(toasts.drain()) == 3
        assert [p.name for p in await backend.list_projects()] == ["Website"]


class TestTaskDetailView:

    @pytest.mark.asyncio
    async def test_comment_feed_appends_in_order(self, backend, project_id, pm_auth, toasts):
        task = await backend.insert_task(project_id, {"title": "Discuss"}, PM_ID)
        await backend.insert_comment(task.id, {"content": "Earlier"}, MEMBER_ID)

        view = TaskDetailView(backend, pm_auth, toasts)
        await view.open_task_view(task.id)
        assert [c.content for c in view.comments] == ["Earlier"]

        await backend.insert_comment(task.id, {"content": "Later"}, MEMBER_ID)
        await settle(view.comment_feed)

        assert [c.content for c in view.comments] == ["Earlier", "Later"]
        assert toasts.last.title == "New comment"
        assert toasts.last.description == "Max Member added a comment"
        view.close_task_view()
        assert backend.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_add_comment_with_mention(self, backend, project_id, pm_auth):
        task = await backend.insert_task(project_id, {"title": "Review"}, PM_ID)
        view = TaskDetailView(backend, pm_auth)
        await view.open_task_view(task.id)

        member = Profile(id=MEMBER_ID, full_name="Max Member")
        comment = await view.add_comment(f"{format_mention(member)} please review")
        await settle(view.comment_feed)

        assert comment.author_name == "Paula Manager"
        assert view.comments.ids() == (comment.id,)
        view.close_task_view()

    @pytest.mark.asyncio
    async def test_status_change_refreshes_activity(self, backend, project_id, pm_auth, toasts):
        task = await backend.insert_task(project_id, {"title": "Track"}, PM_ID)
        view = TaskDetailView(backend, pm_auth, toasts)
        await view.open_task_view(task.id)
        assert [a.action for a in view.activities] == ["created"]

        updated = await view.change_status(TaskStatus.COMPLETED)
        assert updated.status == TaskStatus.COMPLETED
        assert toasts.last.title == "Status updated"
        assert view.activities[0].action == "status_changed"
        assert not view.can_edit

        assert await view.change_status(TaskStatus.TODO) is None
        assert toasts.last.title == "Validation error"
        view.close_task_view()

    @pytest.mark.asyncio
    async def test_subtasks_and_hours(self, backend, project_id, pm_auth, toasts):
        task = await backend.insert_task(project_id, {"title": "Epic-sized"}, PM_ID)
        view = TaskDetailView(backend, pm_auth, toasts)
        await view.open_task_view(task.id)

        subtask = await view.create_subtask({"title": "Slice one"})
        assert view.subtasks == [subtask]
        assert toasts.last.title == "Subtask created"

        updated = await view.update_estimated_hours("3")
        assert updated.estimated_hours == 3.0
        assert toasts.last.title == "Estimated hours updated"
        view.close_task_view()

    @pytest.mark.asyncio
    async def test_delete_redirects_to_project(self, backend, project_id, pm_auth, toasts):
        task = await backend.insert_task(project_id, {"title": "Remove"}, PM_ID)
        view = TaskDetailView(backend, pm_auth, toasts)
        await view.open_task_view(task.id)

        assert await view.delete() == f"/projects/{project_id}"
        assert toasts.last.title == "Task deleted"
        assert await backend.fetch_task(task.id) is None

    @pytest.mark.asyncio
    async def test_missing_task(self, backend, pm_auth, toasts):
        view = TaskDetailView(backend, pm_auth, toasts)
        with pytest.raises(NotFoundError):
            await view.open_task_view("ghost")
        assert toasts.last.is_error

    @pytest.mark.asyncio
    async def test_actions_before_open_toast_not_found(self, backend, pm_auth, toasts):
        view = TaskDetailView(backend, pm_auth, toasts)
        assert await view.change_status(TaskStatus.IN_PROGRESS) is None
        assert toasts.last.title == "Not found"
        assert await view.add_comment("hello") is None
        assert await view.delete() is None
        assert all(t.is_error for t in toasts.drain())

    @pytest.mark.asyncio
    async def test_member_can_edit_own_task_only(self, backend, project_id, member_auth):
        own = await backend.insert_task(project_id, {"title": "Mine", "assigned_to": MEMBER_ID}, PM_ID)
        other = await backend.insert_task(project_id, {"title": "Theirs"}, PM_ID)
        view = TaskDetailView(backend, member_auth)

        await view.open_task_view(own.id)
        assert view.can_edit
        assert (await view.edit({"description": "Notes"})).description == "Notes"

        await view.open_task_view(other.id)
        assert not view.can_edit
        assert await view.edit({"description": "Nope"}) is None
        view.close_task_view()


class TestDashboardAndCalendar:

    @pytest.mark.asyncio
    async def test_dashboard(self, backend, project_id, member_auth):
        await backend.insert_task(project_id, {"title": "Late", "assigned_to": MEMBER_ID,
                                               "due_date": "2020-01-01T00:00:00+00:00"}, PM_ID)
        await backend.insert_task(project_id, {"title": "Done", "assigned_to": MEMBER_ID,
                                               "status": "completed", "estimated_hours": 2}, PM_ID)
        view = DashboardView(backend, member_auth)
        await view.load()

        assert [p.name for p in view.projects] == ["Website"]
        assert view.member_stats.completed == 1
        assert view.member_stats.overdue == 1
        assert view.member_stats.total_estimated_hours == 2
        assert [t.title for t in view.upcoming_deadlines] == ["Late"]

    @pytest.mark.asyncio
    async def test_create_project_from_dashboard(self, backend, pm_auth, toasts):
        view = DashboardView(backend, pm_auth, toasts)
        await view.load()
        project = await view.create_project({"name": "Mobile"})
        assert view.projects[0] == project
        assert toasts.last.title == "Project created"

    @pytest.mark.asyncio
    async def test_calendar_groups_by_due_day(self, backend, project_id, pm_auth):
        await backend.insert_task(project_id, {"title": "A", "due_date": "2024-05-01T00:00:00+00:00"}, PM_ID)
        await backend.insert_task(project_id, {"title": "B", "due_date": "2024-05-01T00:00:00+00:00"}, PM_ID)
        await backend.insert_task(project_id, {"title": "C", "due_date": "2024-05-03T00:00:00+00:00"}, PM_ID)
        await backend.insert_task(project_id, {"title": "Undated"}, PM_ID)
        view = CalendarView(backend, pm_auth)
        await view.load()

        assert view.days_with_tasks() == {date(2024, 5, 1): 2, date(2024, 5, 3): 1}
        assert sorted(t.title for t in view.tasks_on(date(2024, 5, 1))) == ["A", "B"]


class TestAdminUsersView:

    @pytest.mark.asyncio
    async def test_requires_project_manager(self, backend, member_auth, toasts):
        view = AdminUsersView(backend, member_auth, toasts)
        with pytest.raises(AuthorizationError):
            await view.load()
        assert toasts.last.title == "Action not allowed"

    @pytest.mark.asyncio
    async def test_change_role(self, backend, pm_auth, toasts):
        view = AdminUsersView(backend, pm_auth, toasts)
        await view.load()
        assert await view.change_role(MEMBER_ID, UserRole.PROJECT_MANAGER) == UserRole.PROJECT_MANAGER
        roles = {p.id: p.role for p in view.profiles}
        assert roles[MEMBER_ID] == UserRole.PROJECT_MANAGER
        assert toasts.last.title == "Role updated"

        promoted = AuthorizationContext(user_id=MEMBER_ID, role=await backend.fetch_role(MEMBER_ID))
        assert promoted.can_move_tasks
