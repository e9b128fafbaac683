"""Tests for worker startup: queue arguments and the per-process runtime."""

from unittest.mock import MagicMock, patch

import pytest

from admarket.runtime import build_runtime
from admarket.services.events import AppEvent
from admarket.workers.cli import main, worker_argv


class TestWorkerArgv:
    def test_posting_queue_is_capped_at_two(self):
        assert worker_argv("posting") == [
            "worker", "--loglevel=INFO", "-Q", "posting", "-c", "2", "-n", "posting@%h",
        ]

    def test_default_queue(self):
        args = worker_argv("default")
        assert args[args.index("-c") + 1] == "5"

    def test_beat(self):
        assert worker_argv("beat")[0] == "beat"

    def test_unknown_queue(self):
        with pytest.raises(SystemExit):
            worker_argv("reports")

    def test_main_starts_celery(self):
        with patch("admarket.workers.cli.celery_app") as app:
            main(["posting"])
        app.start.assert_called_once_with(worker_argv("posting"))


class TestBuildRuntime:
    def test_wires_listeners_once(self):
        runtime = build_runtime(session_factory=MagicMock(), scheduler=MagicMock())

        assert runtime.bus.has_group("escrow")
        assert len(runtime.bus.handlers(AppEvent.DEAL_COMPLETED)) == 2

    def test_processes_get_separate_buses(self):
        a = build_runtime(session_factory=MagicMock(), scheduler=MagicMock())
        b = build_runtime(session_factory=MagicMock(), scheduler=MagicMock())
        assert a.bus is not b.bus
