"""
Tests for settings, blob storage, authorization context, toasts and the
performance monitor.
"""

from unittest.mock import patch

import psutil
import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.auth import AuthorizationContext, resolve_authorization
from task_board.config import Settings, load_settings
from task_board.errors import AuthorizationError, BackendError, NotFoundError, ValidationError
from task_board.models import UserRole
from task_board.monitoring import PerformanceMonitor
from task_board.storage import (
    AttachmentFile, LocalBlobStorage, attachment_path, check_attachment_size, format_file_size,
)
from task_board.toasts import ToastSink, toast_for_error

from conftest import MEMBER_ID, PM_ID, make_task


class TestSettings:

    def test_defaults(self):
        settings = load_settings({})
        assert settings == Settings()
        assert settings.attachment_max_mb == 10

    def test_environment_overrides(self):
        settings = load_settings({
            "DATABASE_PATH": "/data/board.db",
            "PUBLIC_BASE_URL": "https://board.example.com/",
            "ATTACHMENT_MAX_MB": "2.5",
            "LOG_LEVEL": "debug",
        })
        assert settings.database_path == "/data/board.db"
        assert settings.public_base_url == "https://board.example.com"
        assert settings.attachment_max_mb == 2.5
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("value", ["ten", "0", "-1"])
    def test_invalid_attachment_ceiling(self, value):
        with pytest.raises(ValueError):
            load_settings({"ATTACHMENT_MAX_MB": value})


class TestAttachments:

    def test_size_ceiling(self):
        check_attachment_size(10 * 1024 * 1024)
        with pytest.raises(ValidationError) as exc_info:
            check_attachment_size(10 * 1024 * 1024 + 1)
        assert exc_info.value.message == "File must not exceed 10MB"

    def test_format_file_size(self):
        assert format_file_size(512) == "512 B"
        assert format_file_size(2048) == "2.0 KB"
        assert format_file_size(3 * 1024 * 1024) == "3.0 MB"

    def test_attachment_path(self):
        path = attachment_path("u1", AttachmentFile("Report.final.PDF", b""))
        owner, name = path.split("/")
        assert owner == "u1"
        assert name.endswith(".PDF")
        assert attachment_path("u1", AttachmentFile("README", b"")).endswith(".bin")

    @pytest.mark.asyncio
    async def test_local_storage(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path), "http://files.test/")
        url = await storage.upload("u1/a.txt", b"data")
        assert url == "http://files.test/storage/task-attachments/u1/a.txt"
        assert (tmp_path / "task-attachments" / "u1" / "a.txt").read_bytes() == b"data"

        with pytest.raises(BackendError):
            await storage.upload("u1/a.txt", b"again")

    @pytest.mark.parametrize("path", ["", "/etc/passwd", "../outside.txt", "u1/../../x"])
    def test_paths_cannot_escape_bucket(self, tmp_path, path):
        storage = LocalBlobStorage(str(tmp_path), "http://files.test")
        with pytest.raises(ValidationError):
            storage.resolve(path)


class TestAuthorization:

    def test_roles(self, pm_auth, member_auth):
        assert pm_auth.can_move_tasks and pm_auth.can_manage_projects and pm_auth.can_reassign
        assert not member_auth.can_move_tasks
        assert not member_auth.can_delete_tasks

    def test_edit_rules(self, pm_auth, member_auth):
        own = make_task("a", assigned_to=MEMBER_ID)
        other = make_task("b", assigned_to=PM_ID)
        done = make_task("c", assigned_to=MEMBER_ID, status="completed")
        assert member_auth.can_edit_task(own)
        assert not member_auth.can_edit_task(other)
        assert pm_auth.can_edit_task(other)
        assert not pm_auth.can_edit_task(done)
        assert not AuthorizationContext(user_id=None).can_edit_task(make_task("d"))

    def test_require(self, member_auth):
        member_auth.require(True, "fine")
        with pytest.raises(AuthorizationError, match="managers only"):
            member_auth.require(False, "managers only")

    @pytest.mark.asyncio
    async def test_resolve_from_backend(self, backend):
        assert (await resolve_authorization(backend, PM_ID)).role == UserRole.PROJECT_MANAGER
        member = await resolve_authorization(backend, MEMBER_ID)
        assert member.role == UserRole.MEMBER
        anonymous = await resolve_authorization(backend, None)
        assert anonymous.user_id is None


class TestToasts:

    def test_error_mapping(self):
        assert toast_for_error(ValidationError("title: too short")).description == "title: too short"
        assert toast_for_error(AuthorizationError("nope")).title == "Action not allowed"
        assert toast_for_error(NotFoundError("gone")).title == "Not found"
        backend_toast = toast_for_error(BackendError("sql exploded"), "Failed to update task status")
        assert backend_toast.description == "Failed to update task status"
        assert backend_toast.is_error

    def test_sink(self):
        seen = []
        sink = ToastSink(on_toast=seen.append)
        sink.success("Saved")
        sink.error("Oops", "details")
        assert [t.title for t in seen] == ["Saved", "Oops"]
        assert not seen[0].is_error and seen[1].is_error
        assert len(sink.drain()) == 2
        assert sink.last is None


class TestPerformanceMonitor:

    def test_request_and_broadcast_times(self):
        monitor = PerformanceMonitor()
        monitor.record_request_time("GET /api/projects", 10.0)
        monitor.record_request_time("GET /api/projects", 30.0)
        monitor.record_broadcast_time(2, 8.0)
        summary = monitor.get_performance_summary()
        assert summary["avg_request_time_ms"] == 20.0
        assert summary["avg_broadcast_time_ms"] == 4.0
        assert summary["requests_recorded"] == 2

    def test_daily_stats(self):
        monitor = PerformanceMonitor()
        monitor.increment_daily_stat("status_changes")
        monitor.increment_daily_stat("status_changes", 2)
        assert monitor.get_performance_summary()["daily"] == {"status_changes": 3}

    def test_system_metrics_survive_psutil_errors(self):
        monitor = PerformanceMonitor()
        with patch("task_board.monitoring.psutil.Process", side_effect=psutil.AccessDenied()):
            metrics = monitor.get_system_metrics()
        assert metrics["memory_usage_mb"] == 0.0
        assert metrics["uptime_seconds"] >= 0
