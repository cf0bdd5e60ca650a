"""Tests for quitting and relaunching Cursor. No real processes are touched."""

import asyncio
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

from switchboard.target.process import ProcessController


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _controller(platform, **kwargs):
    kwargs.setdefault("runner", MagicMock(return_value=subprocess.CompletedProcess([], 0)))
    kwargs.setdefault("spawner", MagicMock())
    return ProcessController(platform, grace=0, relaunch_delay=0, **kwargs)


def test_terminate_runs_every_platform_command():
    ctl = _controller("darwin")
    _run(ctl.terminate())

    cmds = [call.args[0] for call in ctl._runner.call_args_list]
    assert cmds[0][0] == "osascript"
    assert cmds[1] == ["pkill", "-f", "Cursor.app"]
    for call in ctl._runner.call_args_list:
        assert call.kwargs["timeout"] == 5
        assert call.kwargs["capture_output"] is True


def test_linux_termination_never_matches_command_lines():
    """Exact-name matching keeps the switchboard process itself alive."""
    for cmd in ProcessController("linux").termination_commands():
        assert "-f" not in cmd
        assert "-x" in cmd


def test_terminate_swallows_failures():
    runner = MagicMock(side_effect=[FileNotFoundError("pkill"), subprocess.TimeoutExpired("pkill", 5)])
    ctl = _controller("linux", runner=runner)
    _run(ctl.terminate())  # does not raise
    assert runner.call_count == 2


def test_relaunch_prefers_configured_path():
    ctl = _controller("linux")
    _run(ctl.relaunch("/opt/custom/cursor"))

    args, kwargs = ctl._spawner.call_args
    assert args[0] == ["/opt/custom/cursor"]
    assert kwargs["start_new_session"] is True
    assert kwargs["stdout"] is subprocess.DEVNULL


def test_relaunch_windows_detaches():
    ctl = _controller("win32")
    _run(ctl.relaunch("C:/Cursor/Cursor.exe"))
    _, kwargs = ctl._spawner.call_args
    assert "creationflags" in kwargs
    assert "start_new_session" not in kwargs


def test_relaunch_uses_first_existing_default(tmp_path):
    exe = tmp_path / "cursor.AppImage"
    exe.write_text("")
    ctl = _controller(
        "linux",
        default_app_paths=lambda: [tmp_path / "missing", exe],
    )
    _run(ctl.relaunch())
    assert ctl._spawner.call_args.args[0] == [str(exe)]


def test_relaunch_without_executable_is_a_warning(monkeypatch):
    monkeypatch.setattr("switchboard.target.process.shutil.which", lambda name: None)
    ctl = _controller("linux", default_app_paths=lambda: [Path("/nonexistent/cursor")])
    _run(ctl.relaunch())
    ctl._spawner.assert_not_called()


def test_relaunch_spawn_failure_is_swallowed():
    ctl = _controller("linux", spawner=MagicMock(side_effect=OSError("exec format error")))
    _run(ctl.relaunch("/bad/binary"))
