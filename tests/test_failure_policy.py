"""Tests for routing uncaught failures through the logger."""

import asyncio
import gc
import json
import logging
import sys
import threading
from unittest.mock import MagicMock

import pytest

from safelog.core.logger import AsyncioLogHandler


def read_events(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


@pytest.fixture
def terminate():
    """Stand-in for process termination."""
    return MagicMock()


class TestUncaughtExceptions:
    """Tests for the process and thread hooks."""

    def test_uncaught_exception_is_logged_and_terminates(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        logger_factory(stream, terminate=terminate)

        try:
            raise RuntimeError("boom")
        except RuntimeError:
            sys.excepthook(*sys.exc_info())

        event = read_events(stream)[0]
        assert event["level"] == "error"
        assert event["message"] == "Uncaught RuntimeError: boom"
        assert "RuntimeError: boom" in event["stack"]
        terminate.assert_called_once_with(1)

    @pytest.mark.parametrize("environment", ["local", "dev", "development"])
    def test_interactive_environments_stay_alive(
        self, monkeypatch, stream, logger_factory, terminate, environment
    ):
        monkeypatch.setenv("APP_ENV", environment)
        logger_factory(stream, terminate=terminate)

        try:
            raise RuntimeError("boom")
        except RuntimeError:
            sys.excepthook(*sys.exc_info())

        assert "boom" in stream.getvalue()
        terminate.assert_not_called()

    def test_injected_exit_policy(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        logger_factory(stream, terminate=terminate, exit_policy=lambda environment: False)

        try:
            raise RuntimeError("boom")
        except RuntimeError:
            sys.excepthook(*sys.exc_info())

        terminate.assert_not_called()

    def test_thread_exception_is_logged(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        logger_factory(stream, terminate=terminate)

        def fail():
            raise ValueError("worker failed")

        worker = threading.Thread(target=fail, name="worker-1")
        worker.start()
        worker.join()

        event = read_events(stream)[0]
        assert event["message"] == "Uncaught ValueError in thread worker-1: worker failed"
        assert "ValueError: worker failed" in event["stack"]
        terminate.assert_called_once_with(1)

    def test_close_restores_hooks(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        previous_hook = sys.excepthook
        previous_thread_hook = threading.excepthook

        handle = logger_factory(stream, terminate=terminate)
        assert sys.excepthook != previous_hook

        handle.close()

        assert sys.excepthook is previous_hook
        assert threading.excepthook is previous_thread_hook

    def test_hooks_not_installed_when_disabled(self, stream, logger_factory):
        previous_hook = sys.excepthook

        logger_factory(stream, handle_exceptions=False)

        assert sys.excepthook is previous_hook


class TestAsyncioFailures:
    """Tests for unhandled failures in the event loop."""

    def test_loop_exception_is_logged(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        handle = logger_factory(stream, terminate=terminate)

        handle.asyncio_exception_handler(
            None,
            {"message": "Task exception was never retrieved", "exception": RuntimeError("lost")},
        )

        event = read_events(stream)[0]
        assert event["message"] == "Task exception was never retrieved: lost"
        assert "RuntimeError: lost" in event["stack"]
        terminate.assert_called_once_with(1)

    def test_loop_message_without_exception(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "development")
        handle = logger_factory(stream, terminate=terminate)

        handle.asyncio_exception_handler(None, {"message": "Unclosed transport"})

        event = read_events(stream)[0]
        assert event["message"] == "Unclosed transport"
        assert "stack" not in event
        terminate.assert_not_called()

    def test_loop_notice_does_not_terminate_in_production(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        handle = logger_factory(stream, terminate=terminate)

        handle.asyncio_exception_handler(None, {"message": "Unclosed transport"})

        event = read_events(stream)[0]
        assert event["level"] == "error"
        assert event["message"] == "Unclosed transport"
        terminate.assert_not_called()

    def test_handler_installed_on_running_loop(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")

        async def main():
            handle = logger_factory(stream, terminate=terminate)
            loop = asyncio.get_running_loop()
            installed = loop.get_exception_handler() == handle.asyncio_exception_handler
            handle.close()
            return installed, loop.get_exception_handler()

        installed, restored = asyncio.run(main())

        assert installed
        assert restored is None

    def test_loop_created_after_logger(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        logger_factory(stream, terminate=terminate)

        async def main():
            loop = asyncio.get_running_loop()
            assert loop.get_exception_handler() is None
            loop.call_exception_handler(
                {"message": "Task exception was never retrieved", "exception": RuntimeError("lost")}
            )

        asyncio.run(main())

        event = read_events(stream)[0]
        assert event["level"] == "error"
        assert event["message"] == "Task exception was never retrieved: lost"
        assert "RuntimeError: lost" in event["stack"]
        terminate.assert_called_once_with(1)

    def test_lost_task_exception_is_logged(self, monkeypatch, stream, logger_factory, terminate):
        monkeypatch.setenv("APP_ENV", "production")
        logger_factory(stream, terminate=terminate)

        async def fail():
            raise RuntimeError("lost")

        async def main():
            task = asyncio.get_running_loop().create_task(fail())
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            del task
            gc.collect()

        asyncio.run(main())

        messages = [event["message"] for event in read_events(stream)]
        assert "Task exception was never retrieved: lost" in messages
        terminate.assert_called_with(1)

    def test_close_detaches_from_asyncio_logger(self, stream, logger_factory, terminate):
        handle = logger_factory(stream, terminate=terminate)
        asyncio_logger = logging.getLogger("asyncio")
        assert any(isinstance(h, AsyncioLogHandler) for h in asyncio_logger.handlers)

        handle.close()

        assert not any(isinstance(h, AsyncioLogHandler) for h in asyncio_logger.handlers)
