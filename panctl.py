"""
panctl - command helpers for a cloud drive CLI

Copyright 2026 UAA Software

Permission is hereby granted, free of charge, to any person obtaining a copy of
this software and associated documentation files (the “Software”), to deal in
the Software without restriction, including without limitation the rights to
use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of
the Software, and to permit persons to whom the Software is furnished to do so,
subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS
FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR
COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER
IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

import argparse
import functools
import json
import logging
import os
import posixpath
import random
import re
import shlex
import string
import subprocess
import sys
import tempfile
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from filelock import FileLock as _FileLock


__version__ = "0.1.0"

APP_NAME = "panctl"

# Module-level logger
logger = logging.getLogger("panctl")

# Expiry timestamps are issued in China Standard Time
CST = timezone(timedelta(hours=8), "CST")
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

TOKEN_REFRESH_WINDOW = 20 * 60  # seconds

RANDOM_ALPHABET = string.ascii_lowercase + string.digits

SESSION_FILE = "session.json"
SESSION_VERSION = 1


# =============================================================================
# Exceptions
# =============================================================================


class PanError(Exception):
    """Base error for drive operations."""


class ConfigError(PanError):
    """Error in configuration."""


class TokenExchangeError(PanError):
    """Token endpoint rejected the refresh token or answered with garbage."""


class RcloneError(PanError):
    """Error from rclone subprocess."""

    def __init__(self, message: str, returncode: int, stdout: str, stderr: str):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


# =============================================================================
# Output Helpers
# =============================================================================


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"


def use_color() -> bool:
    """Check if color output should be used.

    Colors are disabled if:
    - NO_COLOR environment variable is set
    - CI environment variable is set
    - stdout is not a TTY
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("CI"):
        return False
    if not sys.stdout.isatty():
        return False
    return True


def colorize(text: str, color: str) -> str:
    """Wrap text in ANSI color codes if appropriate."""
    if not use_color():
        return text
    color_code = getattr(Colors, color.upper(), "")
    if color_code:
        return f"{color_code}{text}{Colors.RESET}"
    return text


def die(message: str, hint: str | None = None, exit_code: int = 1) -> int:
    """Print error message with optional hint and return the exit code.

    Args:
        message: Error message to display
        hint: Optional remediation hint
        exit_code: Exit code to return

    Returns:
        Exit code (callers return it from main)
    """
    print(colorize(f"Error: {message}", "RED"), file=sys.stderr)
    if hint:
        print(colorize(f"Hint: {hint}", "YELLOW"), file=sys.stderr)

    logger.error(f"Exited with code {exit_code}: {message}")
    if hint:
        logger.error(f"Hint: {hint}")

    return exit_code


# =============================================================================
# Logging
# =============================================================================


def setup_logging(verbosity: int = 0, log_file: bool = True) -> None:
    """Set up logging with console and file handlers.

    PANCTL_VERBOSE in the environment behaves like a single -v.

    Args:
        verbosity: 0=INFO, 1=DEBUG, 2=DEBUG with logger names
        log_file: Whether to write to ~/.panctl/panctl.log
    """
    if os.environ.get("PANCTL_VERBOSE"):
        verbosity = max(verbosity, 1)

    if verbosity >= 2:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    elif verbosity >= 1:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
    else:
        level = logging.INFO
        fmt = "%(asctime)s - %(levelname)s - %(message)s"

    logger.handlers = []
    logger.setLevel(level)

    # Console only shows warnings unless verbose
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING if verbosity == 0 else level)
    console_handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(console_handler)

    if log_file:
        log_dir = Path.home() / ".panctl"
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_dir / "panctl.log", mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

        logger.debug(f"Logging initialized (verbosity={verbosity})")


# =============================================================================
# Low-level Utilities
# =============================================================================


def with_file_lock(path: Path, timeout: float = 10.0):
    """Context manager for cross-platform file locking.

    Args:
        path: Path to lock file
        timeout: Seconds to wait for lock (-1 for infinite)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    return _FileLock(path, timeout=timeout)


def atomic_write_text(dest: Path, text: str, encoding: str = "utf-8") -> None:
    """Write text to dest atomically via temp file + rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(text.encode(encoding))
        os.replace(temp_path, dest)
    except Exception:
        try:
            os.close(fd)
        except OSError:
            pass
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def now_time_str(now: datetime | None = None) -> str:
    """Format a timestamp the way the drive service does (CST, seconds)."""
    now = now or datetime.now(CST)
    return now.astimezone(CST).strftime(TIME_FORMAT)


def parse_expire_time(value: str) -> datetime | None:
    """Parse a CST expiry timestamp, returning None if unparseable."""
    try:
        return datetime.strptime(value, TIME_FORMAT).replace(tzinfo=CST)
    except (TypeError, ValueError):
        return None


# =============================================================================
# Data Model
# =============================================================================


def _from_dict(cls, data: dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class WebToken:
    """Access/refresh credential pair with its expiry."""

    access_token: str = ""
    refresh_token: str = ""
    expire_time: str = ""
    token_type: str = "Bearer"
    expires_in: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebToken":
        return _from_dict(cls, data)


@dataclass
class FileEntity:
    """A remote file or folder."""

    path: str
    drive_id: str = ""
    file_id: str = ""
    file_name: str = ""
    file_type: str = "file"
    size: int = 0
    updated_at: str = ""

    def is_folder(self) -> bool:
        return self.file_type == "folder"


@dataclass
class PluginCallbackParams:
    """Payload handed to the plugin once a token refresh attempt finishes."""

    result: str
    message: str
    old_token: str
    new_token: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def clean_path(path: str) -> str:
    """Normalize a slash-delimited path into its absolute, cleaned form."""
    cleaned = posixpath.normpath("/" + path.lstrip("/"))
    # normpath keeps a leading "//"
    return "/" + cleaned.lstrip("/")


@dataclass
class UserSession:
    """Logged-in user state.

    The API client handle is attached at runtime and never persisted.
    """

    user_id: str = ""
    nickname: str = ""
    refresh_token: str = ""
    web_token: WebToken = field(default_factory=WebToken)
    file_drive_id: str = ""
    album_drive_id: str = ""
    workdirs: dict[str, str] = field(default_factory=dict)
    client: "PanClient | None" = field(default=None, repr=False, compare=False)

    def pan_client(self) -> "PanClient | None":
        return self.client

    def workdir(self, drive_id: str) -> str:
        return self.workdirs.get(drive_id, "/")

    def path_join(self, drive_id: str, path: str) -> str:
        """Join path onto the drive's working directory.

        Absolute paths ignore the working directory and are only cleaned.
        """
        if path.startswith("/"):
            return clean_path(path)
        return clean_path(posixpath.join(self.workdir(drive_id), path))

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "nickname": self.nickname,
            "refresh_token": self.refresh_token,
            "web_token": self.web_token.to_dict(),
            "file_drive_id": self.file_drive_id,
            "album_drive_id": self.album_drive_id,
            "workdirs": dict(self.workdirs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserSession":
        data = dict(data)
        data.pop("client", None)
        token = WebToken.from_dict(data.pop("web_token", None) or {})
        session = _from_dict(cls, data)
        session.web_token = token
        return session


# =============================================================================
# Configuration
# =============================================================================


def get_user_config_dir() -> Path:
    """Return ~/.config/panctl/, creating if needed."""
    env_override = os.environ.get("PANCTL_CONFIG_DIR")
    if env_override:
        config_dir = Path(env_override)
    elif os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        config_dir = base / APP_NAME
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        config_dir = base / APP_NAME

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def load_config(config_dir: Path) -> dict[str, Any]:
    """Load configuration from config.toml, empty if missing.

    Raises:
        ConfigError: If the file is not valid TOML
    """
    config_file = config_dir / "config.toml"
    if not config_file.exists():
        return {}

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    with config_file.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid {config_file}: {exc}") from exc


def load_session(config_dir: Path) -> UserSession | None:
    """Read the active user session, or None if nobody is logged in.

    Raises:
        ConfigError: If session.json is corrupt or from another version
    """
    session_path = config_dir / SESSION_FILE
    if not session_path.exists():
        return None

    with with_file_lock(config_dir / "session.lock"):
        try:
            data = json.loads(session_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ConfigError(f"Corrupt session file {session_path}: {exc}") from exc

    if data.get("version") != SESSION_VERSION:
        raise ConfigError(f"Unsupported session version: {data.get('version')}")

    user = data.get("user")
    if not user:
        return None
    return UserSession.from_dict(user)


def save_session(config_dir: Path, session: UserSession) -> None:
    """Write the active user session atomically."""
    data = {"version": SESSION_VERSION, "user": session.to_dict()}
    with with_file_lock(config_dir / "session.lock"):
        atomic_write_text(config_dir / SESSION_FILE, json.dumps(data, indent=2))
    logger.debug(f"Saved session for user {session.user_id or '<unknown>'}")


# =============================================================================
# Shell Patterns
# =============================================================================


def is_wildcard(name: str) -> bool:
    """Check if name contains any shell wildcard character."""
    return any(c in name for c in "*?[")


def _class_char(pattern: str, i: int) -> tuple[str, int]:
    """Read one (possibly escaped) character of a [...] class."""
    if i >= len(pattern) or pattern[i] in "-]":
        raise ValueError("syntax error in pattern")
    if pattern[i] == "\\":
        i += 1
        if i >= len(pattern):
            raise ValueError("syntax error in pattern")
    return pattern[i], i + 1


def _translate_class(pattern: str, i: int) -> tuple[str, int]:
    """Translate a character class starting just after its '['."""
    n = len(pattern)
    negate = i < n and pattern[i] == "^"
    if negate:
        i += 1

    items: list[str] = []
    while True:
        if i >= n:
            raise ValueError("unterminated character class")
        if pattern[i] == "]" and items:
            i += 1
            break
        lo, i = _class_char(pattern, i)
        hi = lo
        if i < n and pattern[i] == "-":
            hi, i = _class_char(pattern, i + 1)
            if hi < lo:
                raise ValueError(f"bad range {lo}-{hi} in pattern")
        if lo == hi:
            items.append(re.escape(lo))
        else:
            items.append(f"{re.escape(lo)}-{re.escape(hi)}")

    return "[" + ("^" if negate else "") + "".join(items) + "]", i


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern:
    """Compile a shell pattern into a regex.

    '*' and '?' never match '/'. A backslash escapes the next character.

    Raises:
        ValueError: If the pattern is malformed
    """
    i, n = 0, len(pattern)
    parts: list[str] = []
    while i < n:
        c = pattern[i]
        i += 1
        if c == "*":
            while i < n and pattern[i] == "*":
                i += 1
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "\\":
            if i >= n:
                raise ValueError("trailing backslash in pattern")
            parts.append(re.escape(pattern[i]))
            i += 1
        elif c == "[":
            cls, i = _translate_class(pattern, i)
            parts.append(cls)
        else:
            parts.append(re.escape(c))
    return re.compile(r"(?s:%s)\Z" % "".join(parts))


def matches_glob(pattern: str, name: str) -> bool:
    """Shell-glob match; malformed patterns never match."""
    try:
        regex = _compile_glob(pattern)
    except ValueError:
        return False
    return regex.match(name) is not None


# =============================================================================
# Path Resolution
# =============================================================================


def resolve_pattern(
    session: UserSession, drive_id: str, pattern: str
) -> list[FileEntity]:
    """Resolve one pattern, relative to the session workdir, into remote entries.

    Errors from the API client propagate unchanged.
    """
    client = session.pan_client()
    if client is None:
        raise PanError("session has no API client")
    absolute_path = session.path_join(drive_id, pattern)
    return client.match_path_by_shell_pattern(drive_id, absolute_path)


def resolve_patterns(
    session: UserSession, drive_id: str, *patterns: str
) -> list[FileEntity]:
    """Resolve several patterns, keeping input order.

    The first failing pattern aborts the whole resolution.
    """
    files: list[FileEntity] = []
    for pattern in patterns:
        files.extend(resolve_pattern(session, drive_id, pattern))
    return files


def to_absolute_paths(
    session: UserSession, drive_id: str, *patterns: str
) -> list[str]:
    """Join patterns onto the session workdir without touching the network."""
    return [session.path_join(drive_id, pattern) for pattern in patterns]


def ancestor_chain(path: str) -> list[str]:
    """Return "/" followed by every directory prefix of path, ending at path.

    Examples:
        "a/b/c" -> ["/", "/a", "/a/b", "/a/b/c"]
    """
    dirs = ["/"]
    current = "/"
    for segment in clean_path(path).split("/"):
        if not segment:
            continue
        current = posixpath.join(current, segment)
        dirs.append(current)
    return dirs


# =============================================================================
# String Helpers
# =============================================================================


def random_string(count: int) -> str:
    """Random lowercase alphanumeric string for throwaway names.

    Not suitable for secrets.
    """
    rng = random.Random(time.time_ns())
    return "".join(rng.choice(RANDOM_ALPHABET) for _ in range(count))


_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def escape_str(s: str) -> str:
    """Percent-encode s for use as a single path segment."""
    return urllib.parse.quote(s, safe="$&+:=@")


def unescape_str(s: str) -> str:
    """Decode a percent-encoded path segment.

    Malformed escapes yield an empty string rather than an error.
    """
    if _BAD_ESCAPE.search(s):
        return ""
    return urllib.parse.unquote(s, errors="replace")


# =============================================================================
# Plugins
# =============================================================================


class Plugin:
    """Hooks invoked by panctl at well-defined points."""

    def user_token_refresh_finish_callback(
        self, context: dict[str, Any], params: PluginCallbackParams
    ) -> None:
        raise NotImplementedError


class IdlePlugin(Plugin):
    """Plugin used when none is configured; every hook is a no-op."""

    def user_token_refresh_finish_callback(
        self, context: dict[str, Any], params: PluginCallbackParams
    ) -> None:
        return None


class ScriptPlugin(Plugin):
    """Run an external command for each hook.

    The command receives the hook name as its last argument and a JSON
    document with "context" and "params" on stdin.
    """

    def __init__(self, command: str, timeout: float | None = 60):
        self.command = command
        self.timeout = timeout

    def _run_hook(self, hook: str, payload: dict[str, Any]) -> None:
        cmd = shlex.split(self.command) + [hook]
        logger.debug(f"Running plugin hook: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                input=json.dumps(payload),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise PanError(f"plugin {hook} failed: {exc}") from exc

        if result.returncode != 0:
            raise PanError(
                f"plugin {hook} exited with code {result.returncode}: {result.stderr.strip()}"
            )

    def user_token_refresh_finish_callback(
        self, context: dict[str, Any], params: PluginCallbackParams
    ) -> None:
        self._run_hook(
            "user_token_refresh_finish",
            {"context": context, "params": params.to_dict()},
        )


def plugin_context(session: UserSession) -> dict[str, Any]:
    """Describe the app and user to a plugin hook."""
    return {
        "app_name": APP_NAME,
        "version": __version__,
        "user_id": session.user_id,
        "nickname": session.nickname,
        "file_drive_id": session.file_drive_id,
        "album_drive_id": session.album_drive_id,
    }


def load_plugin(config: dict[str, Any]) -> Plugin:
    """Build the plugin described by the [plugin] config table."""
    command = config.get("plugin", {}).get("command")
    if command:
        return ScriptPlugin(command, timeout=config.get("plugin", {}).get("timeout", 60))
    return IdlePlugin()


# =============================================================================
# API Client
# =============================================================================


class PanClient:
    """Operations panctl needs from the drive API."""

    def match_path_by_shell_pattern(self, drive_id: str, absolute_path: str) -> list[FileEntity]:
        raise NotImplementedError

    def get_access_token_from_refresh_token(self, refresh_token: str) -> WebToken:
        raise NotImplementedError

    def update_token(self, token: WebToken) -> None:
        raise NotImplementedError


def run_rclone(
    args: list[str],
    *,
    config_path: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> tuple[int, str, str]:
    """Run rclone subprocess and return (returncode, stdout, stderr).

    Args:
        args: Command line arguments for rclone (not including 'rclone')
        config_path: Optional rclone.conf to use
        env: Optional environment variables to add/override
        timeout: Optional timeout in seconds

    Raises:
        RcloneError: If rclone is missing or returncode is non-zero
    """
    cmd = ["rclone"] + args
    if config_path:
        cmd += ["--config", str(config_path)]

    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)

    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, env=run_env, timeout=timeout
        )
    except FileNotFoundError as exc:
        raise RcloneError(
            "rclone not found in PATH. Install from https://rclone.org/downloads/",
            127,
            "",
            str(exc),
        )

    if result.returncode != 0:
        raise RcloneError(
            f"rclone failed with code {result.returncode}: {result.stderr}",
            result.returncode,
            result.stdout,
            result.stderr,
        )

    return result.returncode, result.stdout, result.stderr


class RcloneClient(PanClient):
    """Drive client backed by rclone remotes.

    Drive ids are rclone remote names. Tokens are exchanged with an
    OAuth2 refresh_token grant against token_url.
    """

    def __init__(
        self,
        config_path: Path | None = None,
        token_url: str | None = None,
        client_id: str | None = None,
        timeout: float = 30.0,
    ):
        self.config_path = config_path
        self.token_url = token_url
        self.client_id = client_id
        self.timeout = timeout
        self.token: WebToken | None = None

    def _env(self, drive_id: str) -> dict[str, str] | None:
        if self.token is None or not self.token.access_token:
            return None

        expiry = parse_expire_time(self.token.expire_time)
        token_json = {
            "access_token": self.token.access_token,
            "token_type": self.token.token_type,
            "refresh_token": self.token.refresh_token,
        }
        if expiry:
            token_json["expiry"] = expiry.isoformat()

        remote = re.sub(r"[^A-Za-z0-9]", "_", drive_id).upper()
        return {f"RCLONE_CONFIG_{remote}_TOKEN": json.dumps(token_json)}

    def list_dir(self, drive_id: str, directory: str) -> list[FileEntity]:
        """List direct children of a remote directory."""
        _, stdout, _ = run_rclone(
            ["lsjson", f"{drive_id}:{directory}"],
            config_path=self.config_path,
            env=self._env(drive_id),
        )
        try:
            items = json.loads(stdout or "[]")
        except ValueError as exc:
            raise PanError(f"Unexpected lsjson output for {directory}: {exc}") from exc
        if not isinstance(items, list):
            raise PanError(f"Unexpected lsjson output for {directory}: {items!r}")

        entries = []
        for item in items:
            if not isinstance(item, dict) or not item.get("Name"):
                raise PanError(f"Unexpected lsjson output for {directory}: {item!r}")
            try:
                size = max(int(item.get("Size") or 0), 0)
            except (TypeError, ValueError) as exc:
                raise PanError(f"Unexpected lsjson output for {directory}: {exc}") from exc
            entries.append(
                FileEntity(
                    path=posixpath.join(directory, item["Name"]),
                    drive_id=drive_id,
                    file_id=item.get("ID", ""),
                    file_name=item["Name"],
                    file_type="folder" if item.get("IsDir") else "file",
                    size=size,
                    updated_at=item.get("ModTime", ""),
                )
            )
        return entries

    def match_path_by_shell_pattern(self, drive_id: str, absolute_path: str) -> list[FileEntity]:
        """Expand an absolute path whose segments may contain wildcards.

        Raises:
            PanError: If a wildcard-free path does not exist
            RcloneError: If listing a directory fails
        """
        segments = [s for s in absolute_path.split("/") if s]
        if not segments:
            return [FileEntity(path="/", drive_id=drive_id, file_name="/", file_type="folder")]

        parents = ["/"]
        matched: list[FileEntity] = []
        for idx, segment in enumerate(segments):
            last = idx == len(segments) - 1
            wildcard = is_wildcard(segment)

            if not last and not wildcard:
                parents = [posixpath.join(p, segment) for p in parents]
                continue

            matched = []
            for parent in parents:
                for entry in self.list_dir(drive_id, parent):
                    if wildcard:
                        hit = matches_glob(segment, entry.file_name)
                    else:
                        hit = entry.file_name == segment
                    if hit and (last or entry.is_folder()):
                        matched.append(entry)
            parents = [entry.path for entry in matched]

        if not matched and not is_wildcard(absolute_path):
            raise PanError(f"{absolute_path}: file not found")
        return matched

    def get_access_token_from_refresh_token(self, refresh_token: str) -> WebToken:
        """Exchange a refresh token for a fresh token pair.

        Raises:
            ConfigError: If no token endpoint is configured
            TokenExchangeError: If the exchange fails
        """
        if not self.token_url:
            raise ConfigError("No token endpoint configured ([auth] token_url)")

        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if self.client_id:
            form["client_id"] = self.client_id

        request = urllib.request.Request(
            self.token_url,
            data=urllib.parse.urlencode(form).encode("ascii"),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise TokenExchangeError(f"token endpoint returned HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise TokenExchangeError(f"token request failed: {exc}") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise TokenExchangeError("token response has no access_token")

        try:
            expires_in = int(payload.get("expires_in") or 7200)
            expire_time = now_time_str(datetime.now(CST) + timedelta(seconds=expires_in))
        except (TypeError, ValueError, OverflowError) as exc:
            raise TokenExchangeError(
                f"token response has bad expires_in {payload.get('expires_in')!r}"
            ) from exc

        return WebToken(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expire_time=expire_time,
            token_type=payload.get("token_type") or "Bearer",
            expires_in=expires_in,
        )

    def update_token(self, token: WebToken) -> None:
        self.token = token


# =============================================================================
# Token Refresh
# =============================================================================


def refresh_token_in_need(
    session: UserSession | None,
    plugin: Plugin | None = None,
    now: datetime | None = None,
) -> bool:
    """Renew the session's access token when it is about to expire.

    A refresh is attempted once the token is within 20 minutes of expiry.
    On success the session and its client get the new token pair. On
    failure the session is left alone; if the token has already expired
    the plugin is told via user_token_refresh_finish_callback.

    Args:
        session: Active user session, mutated in place on success
        plugin: Hook receiver for failed refreshes (no-op if None)
        now: Current time, timezone-aware (defaults to now)

    Returns:
        True only if a new token was obtained
    """
    if session is None:
        return False

    client = session.pan_client()
    if client is None or not session.web_token.refresh_token:
        return False

    now = now or datetime.now(CST)
    expired_at = parse_expire_time(session.web_token.expire_time)
    if expired_at is None:
        logger.debug(
            f"Unparseable token expiry {session.web_token.expire_time!r}, treating as expired"
        )
        expired_at = now

    if (expired_at - now).total_seconds() > TOKEN_REFRESH_WINDOW:
        return False

    logger.debug("access token expired, get new from refresh token")
    try:
        token = client.get_access_token_from_refresh_token(session.refresh_token)
    except Exception as err:
        logger.debug(f"Token refresh failed: {err}")
        # Still inside the grace window: keep using the old token
        if now < expired_at:
            return False

        params = PluginCallbackParams(
            result="fail",
            message=str(err),
            old_token=session.refresh_token,
            new_token="",
            updated_at=now_time_str(now),
        )
        callback_plugin = plugin or IdlePlugin()
        try:
            callback_plugin.user_token_refresh_finish_callback(
                plugin_context(session), params
            )
        except Exception as exc:
            logger.debug(f"user_token_refresh_finish_callback error: {exc}")
        return False

    session.refresh_token = token.refresh_token
    session.web_token = token
    client.update_token(token)
    logger.debug("get new access token success")
    return True


# =============================================================================
# Commands
# =============================================================================


def build_client(config_dir: Path, config: dict[str, Any]) -> RcloneClient:
    """Create the rclone-backed client from [auth] and [rclone] config."""
    rclone_config = config.get("rclone", {}).get("config")
    if rclone_config:
        config_path = Path(rclone_config).expanduser()
    else:
        config_path = config_dir / "rclone.conf"
    if not config_path.exists():
        config_path = None

    auth = config.get("auth", {})
    return RcloneClient(
        config_path=config_path,
        token_url=auth.get("token_url"),
        client_id=auth.get("client_id"),
    )


def open_session(config_dir: Path, config: dict[str, Any]) -> UserSession | None:
    """Load the active session and attach an API client to it."""
    session = load_session(config_dir)
    if session is None:
        return None
    session.client = build_client(config_dir, config)
    session.client.update_token(session.web_token)
    return session


def _no_session(config_dir: Path) -> int:
    return die(
        "No active user session",
        hint=f"Log in first; the session is read from {config_dir / SESSION_FILE}",
    )


def cmd_match(config_dir: Path, drive_id: str, patterns: list[str]) -> int:
    """Print every remote path matching the given patterns."""
    try:
        config = load_config(config_dir)
        session = open_session(config_dir, config)
    except ConfigError as exc:
        return die(str(exc))
    if session is None:
        return _no_session(config_dir)

    if refresh_token_in_need(session, load_plugin(config)):
        save_session(config_dir, session)

    try:
        files = resolve_patterns(session, drive_id, *patterns)
    except PanError as exc:
        return die(str(exc))

    for entity in files:
        print(entity.path)
    logger.debug(f"{len(files)} path(s) matched {patterns}")
    return 0


def cmd_abspath(config_dir: Path, drive_id: str, patterns: list[str]) -> int:
    """Print patterns joined onto the drive working directory."""
    try:
        session = load_session(config_dir) or UserSession()
    except ConfigError as exc:
        return die(str(exc))

    for path in to_absolute_paths(session, drive_id, *patterns):
        print(path)
    return 0


def cmd_token_refresh(config_dir: Path) -> int:
    """Refresh the access token if it is close to expiry."""
    try:
        config = load_config(config_dir)
        session = open_session(config_dir, config)
    except ConfigError as exc:
        return die(str(exc))
    if session is None:
        return _no_session(config_dir)

    if refresh_token_in_need(session, load_plugin(config)):
        save_session(config_dir, session)
        print(colorize(f"Token refreshed, expires at {session.web_token.expire_time}", "GREEN"))
    else:
        print(f"Token not refreshed (expires at {session.web_token.expire_time or 'unknown'})")
    return 0


# =============================================================================
# CLI Entry Point
# =============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME, description="Cloud drive command helpers", exit_on_error=False
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use -v for DEBUG, -vv for more detail)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    match_parser = subparsers.add_parser(
        "match", help="List remote paths matching shell patterns"
    )
    match_parser.add_argument("drive", help="Drive id (rclone remote name)")
    match_parser.add_argument("patterns", nargs="+", help="Paths or shell patterns")

    abspath_parser = subparsers.add_parser(
        "abspath", help="Join paths onto the drive working directory"
    )
    abspath_parser.add_argument("drive", help="Drive id (rclone remote name)")
    abspath_parser.add_argument("patterns", nargs="+", help="Paths or shell patterns")

    ancestors_parser = subparsers.add_parser(
        "ancestors", help="List every parent directory of a path"
    )
    ancestors_parser.add_argument("path")

    token_parser = subparsers.add_parser("token", help="Token commands")
    token_subparsers = token_parser.add_subparsers(
        dest="token_command", help="Token subcommands"
    )
    token_subparsers.add_parser("refresh", help="Refresh the access token if it is near expiry")

    randstr_parser = subparsers.add_parser("randstr", help="Print a random alphanumeric string")
    randstr_parser.add_argument("-n", "--length", type=int, default=16, help="String length")

    escape_parser = subparsers.add_parser("escape", help="Percent-encode a path segment")
    escape_parser.add_argument("text")

    unescape_parser = subparsers.add_parser(
        "unescape", help="Decode a percent-encoded path segment"
    )
    unescape_parser.add_argument("text")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse calls sys.exit() on --help or errors
        return e.code if isinstance(e.code, int) else 1
    except Exception:
        return 1

    setup_logging(verbosity=args.verbose, log_file=True)

    if args.command is None:
        parser.print_help()
        return 0

    # Commands that need no config
    if args.command == "ancestors":
        for path in ancestor_chain(args.path):
            print(path)
        return 0
    elif args.command == "randstr":
        if args.length < 0:
            return die("Length must not be negative")
        print(random_string(args.length))
        return 0
    elif args.command == "escape":
        print(escape_str(args.text))
        return 0
    elif args.command == "unescape":
        print(unescape_str(args.text))
        return 0

    config_dir = get_user_config_dir()

    if args.command == "match":
        return cmd_match(config_dir, args.drive, args.patterns)
    elif args.command == "abspath":
        return cmd_abspath(config_dir, args.drive, args.patterns)
    elif args.command == "token":
        if args.token_command == "refresh":
            return cmd_token_refresh(config_dir)
        token_parser.print_help()
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
