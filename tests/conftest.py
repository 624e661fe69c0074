"""Test fixtures and utilities for panctl."""

import subprocess
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest

import panctl


@pytest.fixture
def rclone_mock(mocker: Any) -> Callable:
    """Mock rclone subprocess calls.

    Returns a callable that can be configured to return specific exit codes
    and outputs for different rclone subcommands.

    Usage:
        def test_something(rclone_mock):
            mock = rclone_mock({
                'lsjson': (0, '[]', ''),
            })

    Advanced usage with handler:
        def test_something(rclone_mock):
            def handler(cmd):
                if cmd[2] == 'gdrive:/':
                    return (0, '[{"Name": "a", "IsDir": true}]', '')
                return (3, '', 'directory not found')
            mock = rclone_mock({'_handler': handler})
    """

    def _create_mock(responses: dict[str, Any] | None = None) -> dict:
        call_log: list[list[str]] = []
        env_log: list[dict[str, str] | None] = []
        responses = responses or {}
        handler = responses.get("_handler")

        def mock_run(*args: Any, **kwargs: Any) -> Any:
            cmd = args[0] if args else kwargs.get("args", [])
            call_log.append(list(cmd))
            env_log.append(kwargs.get("env"))

            subcommand = cmd[1] if len(cmd) > 1 else "unknown"

            if handler:
                returncode, stdout, stderr = handler(cmd)
            elif subcommand in responses:
                returncode, stdout, stderr = responses[subcommand]
            else:
                returncode, stdout, stderr = 0, "", ""

            class MockResult:
                def __init__(self, rc: int, out: str, err: str) -> None:
                    self.returncode = rc
                    self.stdout = out
                    self.stderr = err

            return MockResult(returncode, stdout, stderr)

        mocker.patch("panctl.subprocess.run", side_effect=mock_run)

        return {"calls": call_log, "envs": env_log, "responses": responses}

    return _create_mock


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point PANCTL_CONFIG_DIR at an empty temporary directory."""
    user_config = tmp_path / "user_config"
    user_config.mkdir()
    monkeypatch.setenv("PANCTL_CONFIG_DIR", str(user_config))
    return user_config


@pytest.fixture
def make_session() -> Callable:
    """Build a UserSession whose token expires `minutes` from now."""

    def _make(minutes: float = 60, client: Any = None, **kwargs: Any) -> panctl.UserSession:
        expire = datetime.now(panctl.CST) + timedelta(minutes=minutes)
        token = panctl.WebToken(
            access_token="old-access",
            refresh_token="old-refresh",
            expire_time=expire.strftime(panctl.TIME_FORMAT),
        )
        defaults = {
            "user_id": "u-1",
            "nickname": "tester",
            "refresh_token": "old-refresh",
            "web_token": token,
            "file_drive_id": "gdrive",
            "album_drive_id": "photos",
        }
        defaults.update(kwargs)
        return panctl.UserSession(client=client, **defaults)

    return _make


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: Any) -> None:
    """Keep log files out of the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("PANCTL_VERBOSE", raising=False)


@pytest.fixture(autouse=True)
def block_real_subprocess(monkeypatch: Any) -> None:
    """Block real rclone calls to prevent CI hangs.

    Tests that need subprocess must use rclone_mock fixture which
    overrides this with a proper mock.
    """
    original_run = subprocess.run

    def guarded_run(*args: Any, **kwargs: Any) -> Any:
        cmd = args[0] if args else kwargs.get("args", [])
        if cmd and len(cmd) > 0 and "rclone" in str(cmd[0]).lower():

            class FakeResult:
                returncode = 0
                stdout = "[]"
                stderr = ""

            return FakeResult()
        return original_run(*args, **kwargs)

    monkeypatch.setattr("panctl.subprocess.run", guarded_run)
