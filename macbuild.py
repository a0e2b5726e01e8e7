#!/usr/bin/env python3
"""macbuild - build a macOS application from source and package its bundle.

This module provides tools for:
1. Driving the autotools/make toolchain that produces Emacs.app
2. Post-processing the installed bundle: icon, Info.plist, companion
   launcher, code signing and quarantine stripping

Every primitive operation is delegated to a system tool (make, sips or
ImageMagick, iconutil, PlistBuddy, osacompile, codesign, xattr) through a
small adapter, so the orchestration can be exercised with fakes.

Usage (CLI):
    # Build from the current source tree into ~/Documents/emacs-mac-build
    macbuild

    # Build with a custom icon fetched from the web and a companion launcher
    macbuild --src ~/src/emacs --icon https://example.com/emacs.png \\
        --build-client-app

    # Re-apply icon and metadata to an already built bundle, unsigned
    macbuild --skip-build --icon icon.png --no-sign

Usage (API):
    from macbuild import AppBuilder, BuildConfig

    config = BuildConfig(src_dir=Path("emacs"), app_dir=Path("out"))
    AppBuilder(config).run()
"""

import argparse
import contextlib
import copy
import datetime
import logging
import os
import platform
import plistlib
import re
import shlex
import shutil
import subprocess
import struct
import sys
import tempfile
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Protocol

from dotenv import load_dotenv
from macholib.util import is_platform_file

from iconset import (
    find_resize_tool,
    iconset_entries,
    is_raster_image,
    pack_command,
    resize_command,
)

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

DEFAULT_APP_NAME = "Emacs"

# Default output directory for --enable-mac-app
DEFAULT_APP_DIR = Path("~/Documents/emacs-mac-build")

# Fallback when the CPU count cannot be determined
DEFAULT_JOBS = 4

# codesign identity for ad-hoc signing
ADHOC_IDENTITY = "-"

# Environment variable names
ENV_SIGN_IDENTITY = "SIGN_IDENTITY"
ENV_APP_DIR = "MACBUILD_APP_DIR"
ENV_JOBS = "MACBUILD_JOBS"

CONFIG_FILENAMES = (".macbuild.toml", "macbuild.toml")
CONFIG_SECTION = "build"

CONFIGURE_OPTIONS = (
    "--with-modules",
    "--with-native-compilation=aot",
    "--with-tree-sitter",
    "--enable-mac-self-contained",
    "--with-xwidgets",
    "--without-dbus",
    "--with-mac-metal",
)

NATIVE_CFLAGS = (
    "-march=native -mtune=native -fomit-frame-pointer "
    "-DFD_SETSIZE=10000 -DDARWIN_UNLIMITED_SELECT"
)

PLISTBUDDY = Path("/usr/libexec/PlistBuddy")

LSREGISTER = Path(
    "/System/Library/Frameworks/CoreServices.framework/Frameworks/"
    "LaunchServices.framework/Support/lsregister"
)

URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)

ASSET_CATALOG = "Assets.car"

# Every key shape that can claim the bundle icon
ICON_KEYS = (
    "CFBundleIconFile",
    "CFBundleIconName",
    "CFBundleIcons",
    "CFBundleIconFiles",
)

PRIVACY_USAGE = {
    "NSCameraUsageDescription": "access the Camera",
    "NSMicrophoneUsageDescription": "access the Microphone",
    "NSSpeechRecognitionUsageDescription": "handle any speech recognition",
}

# Companion launcher
CLIENT_APP_NAME = "EmacsClient"
CLIENT_BUNDLE_ID = "org.gnu.EmacsClient"
CLIENT_EXECUTABLE = "emacsclient"
CLIENT_URL_SCHEME = "org-protocol"
DEFAULT_CLIENT_PATH = Path("/usr/local/bin") / CLIENT_EXECUTABLE
CLIENT_CONTENT_TYPES = (
    "public.text",
    "public.plain-text",
    "public.source-code",
    "public.data",
)

CLIENT_SCRIPT_TMPL = """\
on open theFiles
    set fileArgs to ""
    repeat with aFile in theFiles
        set fileArgs to fileArgs & " " & quoted form of POSIX path of aFile
    end repeat
    do shell script "{client} -n -c -a ''" & fileArgs & " > /dev/null 2>&1 &"
end open

on open location theURL
    do shell script "{client} -n -a '' " & quoted form of theURL & " > /dev/null 2>&1 &"
end open location

on run
    do shell script "{client} -n -c -a '' > /dev/null 2>&1 &"
end run
"""

# File extensions for code signing
LIBRARY_EXTENSIONS = (".dylib", ".so")
NESTED_BUNDLE_EXTENSIONS = (
    ".framework",
    ".app",
    ".bundle",
    ".xpc",
    ".appex",
    ".plugin",
)

QUARANTINE_ATTRIBUTE = "com.apple.quarantine"

# ----------------------------------------------------------------------------
# Error handling


class MacBuildError(Exception):
    """Base exception class for macbuild errors."""


class CommandError(MacBuildError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(MacBuildError):
    """Exception raised when configuration is invalid."""


class BundleNotFoundError(MacBuildError):
    """Exception raised when the built bundle cannot be found."""


class ValidationError(MacBuildError):
    """Exception raised when the bundle layout is incomplete."""


class IconError(MacBuildError):
    """Exception raised when an icon cannot be prepared."""


class MetadataError(MacBuildError):
    """Exception raised when Info.plist cannot be read or edited."""


class MetadataKeyError(MetadataError):
    """Raised when an entry is missing, or already present on insert."""


class CodesignError(MacBuildError):
    """Exception raised when codesigning fails."""


class LauncherError(MacBuildError):
    """Exception raised when the companion launcher cannot be built."""


class Policy(Enum):
    """What a failure inside a pipeline step means for the run."""

    FATAL = "fatal"  # abort, non-zero exit
    WARN = "warn"  # log a warning and continue
    SILENT = "silent"  # expected outcome, debug log only


ERROR_POLICY: dict[str, Policy] = {
    "autogen": Policy.FATAL,
    "configure": Policy.FATAL,
    "bootstrap": Policy.WARN,
    "build": Policy.FATAL,
    "install": Policy.FATAL,
    "locate": Policy.FATAL,
    "validate": Policy.FATAL,
    "icon": Policy.WARN,
    "icon-resize": Policy.SILENT,
    "metadata": Policy.WARN,
    "launcher": Policy.WARN,
    "sign": Policy.WARN,
    "verify": Policy.WARN,
    "quarantine": Policy.SILENT,
    "refresh": Policy.WARN,
    "lsregister": Policy.SILENT,
}


@dataclass
class StepOutcome:
    """Result of a guarded step, filled in by policy_guard()."""

    step: str
    failed: bool = False
    error: BaseException | None = None


@contextlib.contextmanager
def policy_guard(step: str, log: logging.Logger) -> Iterator[StepOutcome]:
    """Apply ERROR_POLICY[step] to failures raised inside the block.

    FATAL failures propagate. WARN and SILENT failures are logged and
    swallowed; the yielded StepOutcome records that the step failed.

    Example:
        with policy_guard("bootstrap", self.log) as outcome:
            self.bootstrap()
        if outcome.failed:
            ...
    """
    outcome = StepOutcome(step)
    try:
        yield outcome
    except (MacBuildError, OSError) as e:
        policy = ERROR_POLICY[step]
        if policy is Policy.FATAL:
            raise
        outcome.failed = True
        outcome.error = e
        if policy is Policy.WARN:
            log.warning("%s failed: %s", step, e)
        else:
            log.debug("%s failed (ignored): %s", step, e)


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        log_fmt = self.FORMATS[record.levelno] if self.use_color else self.fmt
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        return logging.Formatter(log_fmt).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output (ignored when not a tty)
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        CustomFormatter(use_color and sys.stderr.isatty())
    )
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Configuration


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Uses `config_path` when given, otherwise the first of .macbuild.toml
    and macbuild.toml found in the current directory.

    Example .macbuild.toml:
        [build]
        src = "~/src/emacs"
        app_dir = "~/Applications"
        jobs = 8
        icon = "https://example.com/emacs.png"
        configure_options = ["--without-native-compilation"]

    Raises:
        ConfigurationError: If an explicit file is missing or any file
            is not valid TOML
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        paths_to_try = [Path.cwd() / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    return tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigurationError(
                    f"Cannot read config file {path}: {e}"
                ) from e
    return {}


def get_config_value(
    config: dict[str, object],
    key: str,
    expected: type | tuple[type, ...] = str,
    section: str = CONFIG_SECTION,
) -> object | None:
    """Get config[section][key] if it has the expected type, else None."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return None
    value = section_config.get(key)
    if value is None:
        return None
    # bool is an int subclass; keep "jobs = true" out
    if isinstance(value, bool) and expected is not bool:
        value_ok = False
    else:
        value_ok = isinstance(value, expected)
    if not value_ok:
        logging.getLogger("config").warning(
            "ignoring [%s] %s: unexpected value %r", section, key, value
        )
        return None
    return value


def default_jobs() -> int:
    """Number of parallel make jobs: the CPU count, else DEFAULT_JOBS."""
    return os.cpu_count() or DEFAULT_JOBS


@dataclass(frozen=True)
class BuildConfig:
    """Immutable settings for one run, resolved once by resolve_config()."""

    src_dir: Path
    app_dir: Path
    prefix: Path | None = None
    icon: str | None = None
    assets: Path | None = None
    build_client_app: bool = False
    jobs: int = DEFAULT_JOBS
    sign_identity: str = ADHOC_IDENTITY
    sign: bool = True
    dry_run: bool = False
    skip_build: bool = False
    configure_options: tuple[str, ...] = field(default_factory=tuple)
    app_name: str = DEFAULT_APP_NAME

    @property
    def bundle_path(self) -> Path:
        return self.app_dir / f"{self.app_name}.app"

    @property
    def fallback_bundle_path(self) -> Path:
        return self.src_dir / "nextstep" / f"{self.app_name}.app"

    @property
    def client_bundle_path(self) -> Path:
        return self.app_dir / f"{CLIENT_APP_NAME}.app"

    @property
    def icon_name(self) -> str:
        return self.app_name


def _parse_jobs(value: object, origin: str) -> int:
    try:
        jobs = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid job count from {origin}: {value!r}") from e
    if jobs < 1:
        raise ConfigurationError(f"Job count must be positive ({origin}): {jobs}")
    return jobs


def resolve_config(
    args: argparse.Namespace,
    environ: dict[str, str] | None = None,
    file_config: dict[str, object] | None = None,
) -> BuildConfig:
    """Merge CLI arguments, environment and config file into a BuildConfig.

    Precedence: command line > environment > config file > default.
    """
    environ = dict(os.environ) if environ is None else environ
    if file_config is None:
        config_path = Path(args.config) if args.config else None
        file_config = load_config(config_path)

    def pick(cli_value: object, key: str, env: str | None = None) -> object:
        if cli_value is not None:
            return cli_value
        if env and environ.get(env):
            return environ[env]
        return get_config_value(file_config, key)

    src = pick(args.src, "src") or Path.cwd()
    app_dir = pick(args.app_dir, "app_dir", ENV_APP_DIR) or DEFAULT_APP_DIR
    prefix = pick(args.prefix, "prefix")
    assets = pick(args.assets, "assets")

    if args.jobs is not None:
        jobs = _parse_jobs(args.jobs, "--jobs")
    elif environ.get(ENV_JOBS):
        jobs = _parse_jobs(environ[ENV_JOBS], ENV_JOBS)
    else:
        file_jobs = get_config_value(file_config, "jobs", int)
        if file_jobs is not None:
            jobs = _parse_jobs(file_jobs, "config")
        else:
            jobs = default_jobs()

    build_client_app = args.build_client_app or bool(
        get_config_value(file_config, "build_client_app", bool)
    )

    extra_options = get_config_value(file_config, "configure_options", list)
    configure_options = tuple(str(opt) for opt in (extra_options or []))

    return BuildConfig(
        src_dir=Path(str(src)).expanduser().absolute(),
        app_dir=Path(str(app_dir)).expanduser().absolute(),
        prefix=Path(str(prefix)).expanduser().absolute() if prefix else None,
        icon=str(pick(args.icon, "icon") or "") or None,
        assets=Path(str(assets)).expanduser() if assets else None,
        build_client_app=build_client_app,
        jobs=jobs,
        sign_identity=str(
            pick(args.sign_identity, "sign_identity", ENV_SIGN_IDENTITY)
            or ADHOC_IDENTITY
        ),
        sign=not args.no_sign,
        dry_run=args.dry_run,
        skip_build=args.skip_build,
        configure_options=configure_options,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


class CommandRunner:
    """Echoes and runs external commands and file operations.

    Every mutating action is logged before it happens. With dry_run the
    action is only logged, marked ``[DRY RUN]``. Read-only queries
    (query()) always execute.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def _announce(self, action: str) -> bool:
        """Log an action; return True if it should actually be performed."""
        if self.dry_run:
            self.log.info("[DRY RUN] + %s", action)
            return False
        self.log.info("+ %s", action)
        return True

    def run(
        self,
        command: list[str],
        cwd: Pathlike | None = None,
        env: dict[str, str] | None = None,
        capture: bool = True,
    ) -> str:
        """Run a command and return its output.

        Args:
            command: The command as a list of arguments
            cwd: Working directory for the command
            env: Extra environment variables, added to os.environ
            capture: Capture output (False streams it to the terminal)

        Returns:
            The command stdout ("" when not captured or in dry-run)

        Raises:
            CommandError: If the command fails or cannot be started
        """
        cmd_str = shlex.join(command)
        if env:
            assignments = " ".join(
                f"{k}={shlex.quote(v)}" for k, v in env.items()
            )
            cmd_str = f"{assignments} {cmd_str}"
        if not self._announce(cmd_str):
            return ""
        full_env = {**os.environ, **env} if env else None
        try:
            result = subprocess.run(
                command,
                shell=False,
                check=True,
                text=True,
                capture_output=capture,
                cwd=cwd,
                env=full_env,
            )
        except subprocess.CalledProcessError as e:
            raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
        except OSError as e:
            raise CommandError(cmd_str, 127, str(e)) from e
        return result.stdout if capture else ""

    def query(self, command: list[str]) -> subprocess.CompletedProcess:
        """Run a read-only command, even in dry-run; never raises on failure."""
        self.log.debug("query: %s", shlex.join(command))
        try:
            return subprocess.run(
                command, shell=False, text=True, capture_output=True
            )
        except OSError as e:
            return subprocess.CompletedProcess(command, 127, "", str(e))

    def make_dirs(self, path: Path) -> None:
        if path.is_dir():
            return
        if self._announce(f"mkdir -p {shlex.quote(str(path))}"):
            path.mkdir(parents=True, exist_ok=True)

    def copy_file(self, src: Path, dst: Path) -> None:
        if self._announce(f"cp {shlex.quote(str(src))} {shlex.quote(str(dst))}"):
            shutil.copy2(src, dst)

    def copy_tree(self, src: Path, dst: Path) -> None:
        if self._announce(
            f"cp -a {shlex.quote(str(src))} {shlex.quote(str(dst))}"
        ):
            shutil.copytree(src, dst, symlinks=True)

    def remove_file(self, path: Path) -> None:
        if not path.exists():
            return
        if self._announce(f"rm -f {shlex.quote(str(path))}"):
            path.unlink()

    def remove_tree(self, path: Path) -> None:
        if not path.exists():
            return
        if self._announce(f"rm -rf {shlex.quote(str(path))}"):
            shutil.rmtree(path)

    def write_text(self, path: Path, content: str) -> None:
        if self._announce(f"write {shlex.quote(str(path))}"):
            path.write_text(content, encoding="utf-8")
        else:
            self.log.debug("content of %s:\n%s", path, content)

    def touch(self, path: Path) -> None:
        if self._announce(f"touch {shlex.quote(str(path))}"):
            path.touch()


# ----------------------------------------------------------------------------
# Metadata (Info.plist) stores and editor


def parse_key_path(path: str) -> list[str | int]:
    """Split a colon path (``:A:B:0``) into keys; digits index arrays."""
    parts = [p for p in path.split(":") if p]
    if not parts:
        raise MetadataError(f"Empty metadata key path: {path!r}")
    return [int(p) if p.isdigit() else p for p in parts]


class MetadataStore(Protocol):
    """Key/value access to a property list, addressed by colon paths.

    set() and delete() raise MetadataKeyError for a missing entry, add()
    raises it for an entry that already exists.
    """

    def exists(self, path: str) -> bool: ...

    def get(self, path: str) -> object: ...

    def set(self, path: str, value: object) -> None: ...

    def add(self, path: str, value: object) -> None: ...

    def delete(self, path: str) -> None: ...


def _plistbuddy_quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _plistbuddy_scalar(value: object) -> tuple[str, str]:
    """Return the PlistBuddy (type, literal) pair for a scalar value."""
    if isinstance(value, bool):
        return "bool", "true" if value else "false"
    if isinstance(value, int):
        return "integer", str(value)
    if isinstance(value, float):
        return "real", repr(value)
    if isinstance(value, str):
        return "string", _plistbuddy_quote(value)
    raise MetadataError(f"Unsupported plist value: {value!r}")


class PlistBuddyStore:
    """MetadataStore backed by /usr/libexec/PlistBuddy."""

    def __init__(
        self, plist: Pathlike, runner: CommandRunner, tool: Pathlike = PLISTBUDDY
    ):
        self.plist = Path(plist)
        self.runner = runner
        self.tool = Path(tool)

    def _command(self, *commands: str, xml: bool = False) -> list[str]:
        cmd = [str(self.tool)]
        if xml:
            cmd.append("-x")
        for command in commands:
            cmd.extend(["-c", command])
        cmd.append(str(self.plist))
        return cmd

    def add_commands(self, path: str, value: object) -> list[str]:
        """Expand a (possibly nested) value into PlistBuddy Add commands."""
        if isinstance(value, dict):
            commands = [f"Add {path} dict"]
            for key, item in value.items():
                commands.extend(self.add_commands(f"{path}:{key}", item))
            return commands
        if isinstance(value, (list, tuple)):
            commands = [f"Add {path} array"]
            for index, item in enumerate(value):
                commands.extend(self.add_commands(f"{path}:{index}", item))
            return commands
        kind, literal = _plistbuddy_scalar(value)
        return [f"Add {path} {kind} {literal}"]

    def _edit(self, *commands: str) -> None:
        try:
            self.runner.run(self._command(*commands))
        except CommandError as e:
            raise MetadataError(f"Cannot edit {self.plist}: {e}") from e

    def exists(self, path: str) -> bool:
        return self.runner.query(self._command(f"Print {path}")).returncode == 0

    def get(self, path: str) -> object:
        result = self.runner.query(self._command(f"Print {path}", xml=True))
        if result.returncode != 0:
            raise MetadataKeyError(f"Entry does not exist: {path}")
        return plistlib.loads(result.stdout.encode("utf-8"))

    def set(self, path: str, value: object) -> None:
        if not self.exists(path):
            raise MetadataKeyError(f"Entry does not exist: {path}")
        if isinstance(value, (dict, list, tuple)):
            # Set only handles scalars; replace containers wholesale
            self._edit(f"Delete {path}", *self.add_commands(path, value))
            return
        _, literal = _plistbuddy_scalar(value)
        self._edit(f"Set {path} {literal}")

    def add(self, path: str, value: object) -> None:
        if self.exists(path):
            raise MetadataKeyError(f"Entry already exists: {path}")
        self._edit(*self.add_commands(path, value))

    def delete(self, path: str) -> None:
        if not self.exists(path):
            raise MetadataKeyError(f"Entry does not exist: {path}")
        self._edit(f"Delete {path}")


class PlistlibStore:
    """MetadataStore that edits the file in-process with plistlib.

    The document is loaded once and written back after every change.
    With dry_run changes stay in memory so later edits see them.
    """

    def __init__(self, plist: Pathlike, dry_run: bool = False):
        self.plist = Path(plist)
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)
        self._data: dict | None = None

    def _load(self) -> dict:
        if self._data is None:
            try:
                with open(self.plist, "rb") as f:
                    self._data = plistlib.load(f)
            except (OSError, plistlib.InvalidFileException) as e:
                raise MetadataError(f"Cannot read {self.plist}: {e}") from e
        return self._data

    def _save(self) -> None:
        if self.dry_run:
            self.log.info("[DRY RUN] + write %s", self.plist)
            return
        try:
            with open(self.plist, "wb") as f:
                plistlib.dump(self._data, f)
        except OSError as e:
            raise MetadataError(f"Cannot write {self.plist}: {e}") from e

    @staticmethod
    def _child(node: object, key: str | int, path: str) -> object:
        try:
            if isinstance(node, dict):
                return node[str(key)]
            if isinstance(node, list) and isinstance(key, int):
                return node[key]
        except (KeyError, IndexError):
            pass
        raise MetadataKeyError(f"Entry does not exist: {path}")

    def _parent(self, path: str) -> tuple[object, str | int]:
        keys = parse_key_path(path)
        node: object = self._load()
        for key in keys[:-1]:
            node = self._child(node, key, path)
        return node, keys[-1]

    def exists(self, path: str) -> bool:
        try:
            self.get(path)
        except MetadataKeyError:
            return False
        return True

    def get(self, path: str) -> object:
        parent, key = self._parent(path)
        return self._child(parent, key, path)

    def set(self, path: str, value: object) -> None:
        parent, key = self._parent(path)
        self._child(parent, key, path)
        if isinstance(parent, dict):
            parent[str(key)] = copy.deepcopy(value)
        else:
            parent[key] = copy.deepcopy(value)  # type: ignore[index]
        self._save()

    def add(self, path: str, value: object) -> None:
        parent, key = self._parent(path)
        if isinstance(parent, dict):
            if str(key) in parent:
                raise MetadataKeyError(f"Entry already exists: {path}")
            parent[str(key)] = copy.deepcopy(value)
        elif isinstance(parent, list) and isinstance(key, int):
            if key > len(parent):
                raise MetadataKeyError(f"Index out of range: {path}")
            parent.insert(key, copy.deepcopy(value))
        else:
            raise MetadataError(f"Cannot add {path}: parent is not a container")
        self._save()

    def delete(self, path: str) -> None:
        parent, key = self._parent(path)
        self._child(parent, key, path)
        if isinstance(parent, dict):
            del parent[str(key)]
        else:
            del parent[key]  # type: ignore[arg-type]
        self._save()


def open_metadata_store(plist: Path, runner: CommandRunner) -> MetadataStore:
    """PlistBuddy where the system provides it, plistlib elsewhere."""
    if PLISTBUDDY.exists() and os.access(PLISTBUDDY, os.X_OK):
        return PlistBuddyStore(plist, runner)
    return PlistlibStore(plist, dry_run=runner.dry_run)


StoreFactory = Callable[[Path, CommandRunner], MetadataStore]


class EditOp(Enum):
    SET = "set"
    ADD_IF_ABSENT = "add-if-absent"
    DELETE_IF_PRESENT = "delete-if-present"


@dataclass(frozen=True)
class MetadataEdit:
    """One row of an edit table: apply `op` with `value` at `path`."""

    path: str
    op: EditOp
    value: object = None


class MetadataEditor:
    """Applies tables of idempotent edits to a MetadataStore.

    - SET updates the entry, inserting it when it does not exist yet
    - ADD_IF_ABSENT inserts only when the entry is missing and never
      overwrites a value already present
    - DELETE_IF_PRESENT removes the entry; a missing entry is fine

    Applying the same table twice leaves the document as applying it once.
    """

    def __init__(self, store: MetadataStore):
        self.store = store
        self.log = logging.getLogger(self.__class__.__name__)

    def apply_edit(self, edit: MetadataEdit) -> None:
        if edit.op is EditOp.SET:
            try:
                self.store.set(edit.path, edit.value)
            except MetadataKeyError:
                self.store.add(edit.path, edit.value)
        elif edit.op is EditOp.ADD_IF_ABSENT:
            if self.store.exists(edit.path):
                self.log.debug("keeping existing %s", edit.path)
                return
            self.store.add(edit.path, edit.value)
        elif edit.op is EditOp.DELETE_IF_PRESENT:
            try:
                self.store.delete(edit.path)
            except MetadataKeyError:
                self.log.debug("%s not present", edit.path)

    def apply(self, edits: list[MetadataEdit]) -> int:
        """Apply every edit; returns the number of edits that failed."""
        failures = 0
        for edit in edits:
            with policy_guard("metadata", self.log) as outcome:
                self.apply_edit(edit)
            if outcome.failed:
                failures += 1
        return failures


def clear_icon_edits() -> list[MetadataEdit]:
    """Remove every key shape that could name a stale icon."""
    return [MetadataEdit(f":{key}", EditOp.DELETE_IF_PRESENT) for key in ICON_KEYS]


def icon_edits(icon_name: str, use_asset_catalog: bool = False) -> list[MetadataEdit]:
    """Point the legacy and the modern icon keys at `icon_name`.

    With an asset catalog the name-reference key CFBundleIconName comes
    first; it is what the catalog is looked up by.
    """
    edits = []
    if use_asset_catalog:
        edits.append(MetadataEdit(":CFBundleIconName", EditOp.SET, icon_name))
    edits.append(MetadataEdit(":CFBundleIconFile", EditOp.SET, icon_name))
    edits.append(
        MetadataEdit(
            ":CFBundleIcons",
            EditOp.SET,
            {
                "CFBundlePrimaryIcon": {
                    "CFBundleIconFiles": [icon_name],
                    "CFBundleIconName": icon_name,
                }
            },
        )
    )
    return edits


def privacy_edits(app_name: str) -> list[MetadataEdit]:
    """Usage descriptions, added only where the build did not set one."""
    return [
        MetadataEdit(
            f":{key}",
            EditOp.ADD_IF_ABSENT,
            f"{app_name} requires permission to {purpose}.",
        )
        for key, purpose in PRIVACY_USAGE.items()
    ]


def client_edits(version: str, icon_name: str | None = None) -> list[MetadataEdit]:
    """Identity, URL scheme and document types of the companion launcher."""
    edits = [
        MetadataEdit(":CFBundleIdentifier", EditOp.SET, CLIENT_BUNDLE_ID),
        MetadataEdit(":CFBundleName", EditOp.SET, CLIENT_APP_NAME),
        MetadataEdit(":CFBundleDisplayName", EditOp.SET, CLIENT_APP_NAME),
        MetadataEdit(":CFBundleShortVersionString", EditOp.SET, version),
        MetadataEdit(":CFBundleVersion", EditOp.SET, version),
        MetadataEdit(
            ":CFBundleURLTypes",
            EditOp.SET,
            [
                {
                    "CFBundleURLName": f"{CLIENT_BUNDLE_ID}.{CLIENT_URL_SCHEME}",
                    "CFBundleURLSchemes": [CLIENT_URL_SCHEME],
                }
            ],
        ),
        MetadataEdit(
            ":CFBundleDocumentTypes",
            EditOp.SET,
            [
                {
                    "CFBundleTypeName": "Document",
                    "CFBundleTypeRole": "Editor",
                    "LSHandlerRank": "Alternate",
                    "LSItemContentTypes": list(CLIENT_CONTENT_TYPES),
                }
            ],
        ),
    ]
    if icon_name:
        edits.extend(clear_icon_edits())
        edits.extend(icon_edits(icon_name))
    return edits


# ----------------------------------------------------------------------------
# Bundle layout and location


class AppBundle:
    """Layout of a macOS application bundle.

    Args:
        path: Path to the .app directory
        executable_name: Name of the main executable in Contents/MacOS
    """

    def __init__(self, path: Pathlike, executable_name: str):
        self.path = Path(path)
        self.contents = self.path / "Contents"
        self.macos = self.contents / "MacOS"
        self.resources = self.contents / "Resources"
        self.info_plist = self.contents / "Info.plist"
        self.executable = self.macos / executable_name

    def __repr__(self) -> str:
        return f"AppBundle({str(self.path)!r})"

    def exists(self) -> bool:
        return self.path.is_dir()

    def missing_parts(self) -> list[str]:
        """Describe each required part that is absent."""
        missing = []
        if not self.macos.is_dir():
            missing.append(f"MacOS directory not found: {self.macos}")
        elif not self.executable.is_file():
            missing.append(
                f"MacOS directory is missing {self.executable.name} executable"
            )
        if not self.info_plist.is_file():
            missing.append(f"Info.plist file not found: {self.info_plist}")
        return missing

    def validate(self) -> None:
        """Raise ValidationError unless executable and Info.plist exist."""
        missing = self.missing_parts()
        if missing:
            raise ValidationError("; ".join(missing))


def locate_bundle(config: BuildConfig, runner: CommandRunner) -> AppBundle:
    """Find the installed bundle, copying it from the source tree if needed.

    Raises:
        BundleNotFoundError: If neither location holds the bundle
    """
    log = logging.getLogger("locate")
    bundle = AppBundle(config.bundle_path, config.app_name)
    if bundle.exists():
        log.info("Found %s", bundle.path)
        return bundle

    fallback = config.fallback_bundle_path
    if fallback.is_dir():
        log.info("Moving %s -> %s", fallback, config.app_dir)
        runner.make_dirs(config.app_dir)
        runner.copy_tree(fallback, bundle.path)
        return bundle

    if config.dry_run:
        log.warning(
            "%s not found (expected once the build has run)", bundle.path
        )
        return bundle
    raise BundleNotFoundError(
        f"{config.app_name}.app not found at {bundle.path} or {fallback}. "
        "Build may have failed or app path differs."
    )


# ----------------------------------------------------------------------------
# Toolchain


def compiler_flags(machine: str | None = None) -> str:
    """CFLAGS for configure; -mcpu is only valid on arm64."""
    machine = machine or platform.machine()
    if machine == "arm64":
        return f"-O2 -mcpu=native {NATIVE_CFLAGS}"
    return f"-O2 {NATIVE_CFLAGS}"


class Toolchain:
    """Runs autogen, configure, make bootstrap, make and make install."""

    def __init__(self, config: BuildConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self.log = logging.getLogger(self.__class__.__name__)

    def _run(self, command: list[str], env: dict[str, str] | None = None) -> None:
        self.runner.run(command, cwd=self.config.src_dir, env=env, capture=False)

    def configure_options(self) -> list[str]:
        options = list(CONFIGURE_OPTIONS)
        options.append(f"--enable-mac-app={self.config.app_dir}")
        if self.config.prefix:
            options.append(f"--prefix={self.config.prefix}")
        options.extend(self.config.configure_options)
        return options

    def autogen(self) -> None:
        if (self.config.src_dir / "autogen.sh").exists():
            self._run(["./autogen.sh"])
        else:
            self._run(["autoreconf", "-fvi"])

    def configure(self) -> None:
        self.log.info("Configuring (this may take a moment)")
        self._run(
            ["./configure", *self.configure_options()],
            env={"CFLAGS": compiler_flags()},
        )

    def bootstrap(self) -> None:
        self._run(["make", f"-j{self.config.jobs}", "bootstrap"])

    def build(self) -> None:
        self._run(["make", f"-j{self.config.jobs}"])

    def install(self) -> None:
        if self.config.prefix:
            self.log.info("Installing to prefix: %s", self.config.prefix)
        else:
            self.log.info(
                "Installing the Mac App to %s", self.config.app_dir
            )
        self._run(["make", "install"])

    def run(self) -> None:
        """Run every step; failures follow ERROR_POLICY."""
        steps: list[tuple[str, Callable[[], None]]] = [
            ("autogen", self.autogen),
            ("configure", self.configure),
            ("bootstrap", self.bootstrap),
            ("build", self.build),
            ("install", self.install),
        ]
        for step, func in steps:
            with policy_guard(step, self.log) as outcome:
                func()
            if step == "bootstrap":
                if outcome.failed:
                    self.log.warning(
                        "bootstrap failed; continuing with normal build"
                    )
                else:
                    self.log.info("Bootstrap succeeded")


# ----------------------------------------------------------------------------
# Icon pipeline


class IconRasterizer(Protocol):
    """Renders icon sizes and packs them into an .icns container."""

    def resize(self, source: Path, dest: Path, pixels: int) -> None: ...

    def pack(self, iconset_dir: Path, output: Path) -> None: ...


class SystemIconRasterizer:
    """IconRasterizer using ImageMagick or sips, and iconutil."""

    def __init__(self, runner: CommandRunner, tool: str | None = None):
        self.runner = runner
        self.tool = tool or find_resize_tool()

    def resize(self, source: Path, dest: Path, pixels: int) -> None:
        if not self.tool:
            raise IconError("No image resize tool found (magick, convert, sips)")
        self.runner.run(resize_command(self.tool, source, dest, pixels))

    def pack(self, iconset_dir: Path, output: Path) -> None:
        self.runner.run(pack_command(iconset_dir, output))


class IconPipeline:
    """Installs a custom icon (and optional Assets.car) into a bundle.

    The source is fetched and rasterized into a temporary directory
    before the bundle is touched. Icon files are then installed all or
    nothing, and the icon keys are rewritten last, so a failed icon step
    leaves the bundle's icon state as it was.
    """

    def __init__(
        self,
        config: BuildConfig,
        runner: CommandRunner,
        rasterizer: IconRasterizer | None = None,
    ):
        self.config = config
        self.runner = runner
        self.rasterizer = rasterizer or SystemIconRasterizer(runner)
        self.log = logging.getLogger(self.__class__.__name__)

    def download(self, url: str, dest: Path) -> None:
        """Fetch `url` into `dest` with curl, else wget."""
        self.log.info("Downloading icon from: %s", url)
        if shutil.which("curl"):
            command = ["curl", "-fsSL", "-o", str(dest), url]
        elif shutil.which("wget"):
            command = ["wget", "-q", "-O", str(dest), url]
        else:
            raise IconError("Neither curl nor wget is available to fetch icon")
        try:
            self.runner.run(command)
        except CommandError as e:
            raise IconError(f"Icon download failed: {e}") from e

    def resolve_icon_source(self, icon: str, workdir: Path) -> Path:
        """Return a local file for `icon`, downloading URLs into `workdir`."""
        if URL_PATTERN.match(icon):
            name = Path(icon.split("?", 1)[0]).name or "icon"
            dest = workdir / f"download-{name}"
            self.download(icon, dest)
            return dest
        path = Path(icon).expanduser()
        if not path.is_file():
            raise IconError(f"Icon file not found: {path}")
        return path

    def make_iconset(self, source: Path, iconset_dir: Path) -> None:
        """Render every iconset size; a failed size gets the source as-is."""
        self.runner.make_dirs(iconset_dir)
        for filename, pixels in iconset_entries():
            dest = iconset_dir / filename
            with policy_guard("icon-resize", self.log) as outcome:
                self.rasterizer.resize(source, dest, pixels)
            if outcome.failed:
                self.runner.copy_file(source, dest)

    def rasterize(self, source: Path, workdir: Path) -> Path:
        """Return an .icns for `source`, converting PNG/JPEG images."""
        if not is_raster_image(source):
            return source
        self.log.info("Converting image to ICNS")
        iconset_dir = workdir / f"{self.config.icon_name}.iconset"
        output = workdir / f"{self.config.icon_name}.icns"
        self.make_iconset(source, iconset_dir)
        try:
            self.rasterizer.pack(iconset_dir, output)
        except CommandError as e:
            raise IconError(f"Cannot pack {iconset_dir}: {e}") from e
        return output

    def icon_path(self, bundle: AppBundle) -> Path:
        return bundle.resources / f"{self.config.icon_name}.icns"

    def install_icon(self, container: Path, bundle: AppBundle) -> None:
        """Copy the .icns into Resources."""
        dest = self.icon_path(bundle)
        self.log.info("Applying icon: copying %s -> %s", container, dest)
        self.runner.make_dirs(bundle.resources)
        self.runner.copy_file(container, dest)

    def install_asset_catalog(self, bundle: AppBundle) -> None:
        """Copy --assets in, or remove a stale Assets.car.

        A leftover Assets.car takes precedence over the .icns named by
        CFBundleIconFile on recent macOS.
        """
        dest = bundle.resources / ASSET_CATALOG
        if self.config.assets:
            self.runner.make_dirs(bundle.resources)
            self.runner.copy_file(self.config.assets, dest)
            self.log.info("Using %s with CFBundleIconName", ASSET_CATALOG)
        else:
            self.runner.remove_file(dest)

    def _snapshot(self, bundle: AppBundle) -> dict[Path, bytes | None]:
        """Contents of the icon files install_files() may replace."""
        paths = (self.icon_path(bundle), bundle.resources / ASSET_CATALOG)
        return {p: p.read_bytes() if p.is_file() else None for p in paths}

    def _restore(self, saved: dict[Path, bytes | None]) -> None:
        if self.runner.dry_run:
            return
        for path, data in saved.items():
            if data is not None:
                path.write_bytes(data)
            elif path.is_file():
                path.unlink()
        self.log.info("Restored previous icon files")

    def install_files(self, container: Path | None, bundle: AppBundle) -> None:
        """Install the .icns and asset catalog, all or nothing."""
        saved = self._snapshot(bundle)
        try:
            if container:
                self.install_icon(container, bundle)
            self.install_asset_catalog(bundle)
        except (MacBuildError, OSError):
            self._restore(saved)
            raise

    def apply_metadata(self, editor: MetadataEditor) -> None:
        """Replace every icon key with ones naming the installed icon."""
        editor.apply(clear_icon_edits())
        editor.apply(
            icon_edits(
                self.config.icon_name,
                use_asset_catalog=self.config.assets is not None,
            )
        )

    def refresh(self, bundle: AppBundle) -> None:
        """Bump modification times and re-register with LaunchServices."""
        with policy_guard("refresh", self.log):
            for path in (bundle.path, bundle.contents, bundle.info_plist):
                if path.exists():
                    self.runner.touch(path)
        if LSREGISTER.exists() and os.access(LSREGISTER, os.X_OK):
            with policy_guard("lsregister", self.log):
                self.runner.run([str(LSREGISTER), "-f", str(bundle.path)])
        self.log.info(
            "If the icon does not show, run 'killall Finder Dock' "
            "or log out and back in."
        )

    def _check_assets(self) -> None:
        assets = self.config.assets
        if assets and not assets.is_file():
            raise IconError(f"Assets file not found: {assets}")

    def run(self, bundle: AppBundle, store: MetadataStore) -> bool:
        """Apply --icon / --assets to `bundle`.

        Info.plist is only edited once the icon files are in place; a
        failure before that leaves the bundle's icon files and keys as
        they were.

        Returns:
            True if an icon change was applied
        """
        if not self.config.icon and not self.config.assets:
            return False
        with policy_guard("icon", self.log) as outcome:
            self._check_assets()
            with tempfile.TemporaryDirectory(prefix="macbuild.") as tmp:
                workdir = Path(tmp)
                container = None
                if self.config.icon:
                    source = self.resolve_icon_source(self.config.icon, workdir)
                    container = self.rasterize(source, workdir)
                self.install_files(container, bundle)
        if outcome.failed:
            self.log.warning("Skipping icon; bundle keeps its existing icon")
            return False
        self.apply_metadata(MetadataEditor(store))
        self.refresh(bundle)
        self.log.info("Icon applied to %s", bundle.resources)
        return True


# ----------------------------------------------------------------------------
# Companion launcher


def applescript_string(text: str) -> str:
    """Escape text for use inside an AppleScript double-quoted literal."""
    return text.replace("\\", "\\\\").replace('"', '\\"')


def render_client_script(client: Path) -> str:
    """AppleScript that forwards opened files and URLs to `client`."""
    return CLIENT_SCRIPT_TMPL.format(
        client=applescript_string(shlex.quote(str(client)))
    )


class ClientLauncher:
    """Builds EmacsClient.app, a small applet that proxies to emacsclient."""

    def __init__(
        self,
        config: BuildConfig,
        runner: CommandRunner,
        store_factory: StoreFactory = open_metadata_store,
    ):
        self.config = config
        self.runner = runner
        self.store_factory = store_factory
        self.log = logging.getLogger(self.__class__.__name__)

    def resolve_client_path(self, bundle: AppBundle) -> Path:
        """Explicit prefix, else next to the app executable, else system path."""
        if self.config.prefix:
            client = self.config.prefix / "bin" / CLIENT_EXECUTABLE
            if not client.exists():
                self.log.warning("%s does not exist (yet)", client)
            return client
        colocated = bundle.macos / "bin" / CLIENT_EXECUTABLE
        if colocated.exists():
            return colocated
        if not DEFAULT_CLIENT_PATH.exists():
            self.log.warning(
                "No %s found in %s; launcher will call %s, which is missing. "
                "Pass --prefix to choose another location.",
                CLIENT_EXECUTABLE,
                bundle.macos / "bin",
                DEFAULT_CLIENT_PATH,
            )
        return DEFAULT_CLIENT_PATH

    def compile(self, script: str, target: Path) -> None:
        with tempfile.TemporaryDirectory(prefix="macbuild.") as tmp:
            source = Path(tmp) / f"{CLIENT_APP_NAME}.applescript"
            self.runner.write_text(source, script)
            self.runner.remove_tree(target)
            try:
                self.runner.run(["osacompile", "-o", str(target), str(source)])
            except CommandError as e:
                raise LauncherError(f"Cannot compile {target}: {e}") from e

    def primary_version(self, bundle: AppBundle) -> str:
        store = self.store_factory(bundle.info_plist, self.runner)
        try:
            return str(store.get(":CFBundleShortVersionString"))
        except MetadataError:
            return "1.0"

    def copy_icon(self, bundle: AppBundle, client_bundle: AppBundle) -> str | None:
        """Reuse the primary bundle's icon; returns the icon name or None."""
        icon = bundle.resources / f"{self.config.icon_name}.icns"
        if not icon.exists():
            return None
        self.runner.make_dirs(client_bundle.resources)
        self.runner.copy_file(
            icon, client_bundle.resources / f"{CLIENT_APP_NAME}.icns"
        )
        self.runner.remove_file(client_bundle.resources / ASSET_CATALOG)
        return CLIENT_APP_NAME

    def build(self, bundle: AppBundle) -> AppBundle | None:
        """Build the launcher next to `bundle`; None if that failed."""
        target = self.config.client_bundle_path
        client_bundle = AppBundle(target, "applet")
        with policy_guard("launcher", self.log) as outcome:
            client = self.resolve_client_path(bundle)
            self.log.info("Building %s (client: %s)", target, client)
            self.compile(render_client_script(client), target)
            icon_name = self.copy_icon(bundle, client_bundle)
            store = self.store_factory(client_bundle.info_plist, self.runner)
            failures = MetadataEditor(store).apply(
                client_edits(self.primary_version(bundle), icon_name)
            )
            if failures:
                self.log.warning("%d launcher metadata edits failed", failures)
        if outcome.failed:
            return None
        return client_bundle


# ----------------------------------------------------------------------------
# Codesigning


class CodeSigner(Protocol):
    """Signs and verifies individual paths."""

    def sign(self, path: Path) -> None: ...

    def verify(self, path: Path) -> None: ...


class CodesignTool:
    """CodeSigner backed by /usr/bin/codesign.

    Args:
        runner: CommandRunner used for invocations
        identity: Signing identity ("-" for ad-hoc)
    """

    def __init__(self, runner: CommandRunner, identity: str = ADHOC_IDENTITY):
        self.runner = runner
        self.identity = identity or ADHOC_IDENTITY

    def sign(self, path: Path) -> None:
        command = ["codesign", "--force", "--sign", self.identity]
        if self.identity != ADHOC_IDENTITY:
            command.append("--timestamp")
        command.append(str(path))
        try:
            self.runner.run(command)
        except CommandError as e:
            raise CodesignError(f"Cannot sign {path}: {e}") from e

    def verify(self, path: Path) -> None:
        command = ["codesign", "--verify", "--deep", "--strict", "--verbose=2"]
        try:
            self.runner.run(command + [str(path)])
        except CommandError as e:
            raise CodesignError(f"Verification failed for {path}: {e}") from e


def is_macho(path: Path) -> bool:
    """Check if a file is a Mach-O binary.

    Unreadable or truncated files are reported as not Mach-O.
    """
    try:
        return is_platform_file(str(path))
    except (OSError, struct.error, ValueError) as e:
        logging.getLogger("signing").debug("not a Mach-O file: %s (%s)", path, e)
        return False


@dataclass
class SigningTargets:
    """Nested artifacts of a bundle, in signing order."""

    libraries: list[Path] = field(default_factory=list)
    executables: list[Path] = field(default_factory=list)
    bundles: list[Path] = field(default_factory=list)

    def ordered(self) -> list[Path]:
        return self.libraries + self.executables + self.bundles


class BundleSigner:
    """Signs a bundle bottom-up, verifies it and strips quarantine.

    Order: dynamic libraries, then Mach-O executables, then nested
    bundles (deepest first), then the bundle itself. Any later change to
    nested content invalidates the outer signature.
    """

    def __init__(self, signer: CodeSigner, runner: CommandRunner):
        self.signer = signer
        self.runner = runner
        self.log = logging.getLogger(self.__class__.__name__)

    def collect(self, bundle_path: Path) -> SigningTargets:
        """Walk the bundle and categorize all nested signable targets."""
        targets = SigningTargets()
        for root, folders, files in os.walk(bundle_path):
            root_path = Path(root)
            for fname in sorted(files):
                fpath = root_path / fname
                if fpath.is_symlink():
                    continue
                if fpath.suffix in LIBRARY_EXTENSIONS:
                    self.log.debug("added library: %s", fpath)
                    targets.libraries.append(fpath)
                elif is_macho(fpath):
                    self.log.debug("added executable: %s", fpath)
                    targets.executables.append(fpath)
            for folder in folders:
                fpath = root_path / folder
                if fpath.is_symlink():
                    continue
                if fpath.suffix in NESTED_BUNDLE_EXTENSIONS:
                    self.log.debug("added bundle: %s", fpath)
                    targets.bundles.append(fpath)
        targets.bundles.sort(key=lambda p: (-len(p.parts), str(p)))
        return targets

    def sign(self, bundle_path: Path) -> int:
        """Sign nested targets, then the bundle, then verify.

        Returns:
            Number of signing failures
        """
        self.log.info("Signing app: %s", bundle_path)
        failures = 0
        for path in self.collect(bundle_path).ordered():
            with policy_guard("sign", self.log) as outcome:
                self.signer.sign(path)
            failures += outcome.failed
        # nested signing must be complete before this point
        with policy_guard("sign", self.log) as outcome:
            self.signer.sign(bundle_path)
        failures += outcome.failed

        if self.runner.dry_run:
            self.log.info("Code signing verification skipped (dry run)")
            return failures
        with policy_guard("verify", self.log) as outcome:
            self.signer.verify(bundle_path)
        if outcome.failed:
            self.log.warning("Code signing verification failed")
        else:
            self.log.info("Code signing verification successful")
        return failures

    def strip_quarantine(self, bundle_path: Path) -> None:
        """Remove the quarantine attribute recursively, if xattr exists."""
        if not shutil.which("xattr"):
            self.log.debug("xattr not available; quarantine left as is")
            return
        with policy_guard("quarantine", self.log):
            self.runner.run(
                ["xattr", "-dr", QUARANTINE_ATTRIBUTE, str(bundle_path)]
            )


# ----------------------------------------------------------------------------
# Pipeline


class AppBuilder:
    """Runs the whole build and bundle post-processing once, in order.

    Args:
        config: Resolved BuildConfig
        runner: CommandRunner (default: one honoring config.dry_run)
        store_factory: Opens the MetadataStore for an Info.plist
        signer: CodeSigner (default: codesign with config.sign_identity)
        rasterizer: IconRasterizer (default: ImageMagick/sips + iconutil)

    Example:
        AppBuilder(config).run()
    """

    def __init__(
        self,
        config: BuildConfig,
        runner: CommandRunner | None = None,
        store_factory: StoreFactory = open_metadata_store,
        signer: CodeSigner | None = None,
        rasterizer: IconRasterizer | None = None,
    ):
        self.config = config
        self.runner = runner or CommandRunner(dry_run=config.dry_run)
        self.store_factory = store_factory
        self.signer = signer or CodesignTool(self.runner, config.sign_identity)
        self.rasterizer = rasterizer
        self.log = logging.getLogger(self.__class__.__name__)

    def summary(self) -> None:
        config = self.config
        self.log.info("Source dir: %s", config.src_dir)
        self.log.info("App dir:    %s", config.app_dir)
        if config.icon:
            self.log.info("Icon:       %s", config.icon)
        if config.assets:
            self.log.info("Assets:     %s", config.assets)
        self.log.info("Jobs:       %s", config.jobs)
        if config.sign:
            self.log.info(
                "Codesign:   will sign with identity: %s", config.sign_identity
            )
        else:
            self.log.info("Codesign:   skipped")

    def validate(self, bundle: AppBundle) -> None:
        with policy_guard("validate", self.log):
            try:
                bundle.validate()
            except ValidationError as e:
                if not self.config.dry_run:
                    raise
                self.log.warning("%s", e)

    def validate_resources(self, bundle: AppBundle) -> None:
        with policy_guard("validate", self.log):
            if not bundle.resources.is_dir() and not self.config.dry_run:
                raise ValidationError(
                    f"Resources directory not found: {bundle.resources}"
                )
        icon = bundle.resources / f"{self.config.icon_name}.icns"
        if not icon.exists():
            self.log.warning(
                "Resources directory is missing %s (may use default icon)",
                icon.name,
            )

    def run(self) -> AppBundle:
        """Execute the pipeline; returns the primary bundle.

        Raises:
            MacBuildError: On any FATAL step failure
        """
        self.summary()
        if self.config.skip_build:
            self.log.info("Skipping build; post-processing existing bundle")
        else:
            Toolchain(self.config, self.runner).run()

        with policy_guard("locate", self.log):
            bundle = locate_bundle(self.config, self.runner)
        self.validate(bundle)

        store = self.store_factory(bundle.info_plist, self.runner)
        IconPipeline(self.config, self.runner, self.rasterizer).run(bundle, store)

        self.log.info("Ensuring protected resources usage descriptions exist")
        MetadataEditor(store).apply(privacy_edits(self.config.app_name))

        bundles = [bundle]
        if self.config.build_client_app:
            client_bundle = ClientLauncher(
                self.config, self.runner, self.store_factory
            ).build(bundle)
            if client_bundle:
                bundles.append(client_bundle)

        self.validate_resources(bundle)

        bundle_signer = BundleSigner(self.signer, self.runner)
        if self.config.sign:
            for item in bundles:
                bundle_signer.sign(item.path)
        else:
            self.log.info("Skipping codesign as requested")
        for item in bundles:
            bundle_signer.strip_quarantine(item.path)

        self.log.info("mac build complete: %s", bundle.path)
        return bundle


# ----------------------------------------------------------------------------
# Command-line interface


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macbuild",
        description=(
            "Build a macOS Emacs.app from source (mac-port style) "
            "with an optional custom icon."
        ),
        epilog=(
            "Examples:\n"
            "  macbuild --src ~/src/emacs\n"
            "  macbuild --icon https://example.com/emacs.png --build-client-app\n"
            "  macbuild --skip-build --icon icon.png --no-sign\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--src",
        metavar="DIR",
        help="Emacs source directory (default: current directory)",
    )
    parser.add_argument(
        "--app-dir",
        metavar="DIR",
        help=(
            "directory for --enable-mac-app, where Emacs.app is created "
            f"(default: {DEFAULT_APP_DIR})"
        ),
    )
    parser.add_argument(
        "--prefix",
        metavar="DIR",
        help="optional install prefix for configure --prefix",
    )
    parser.add_argument(
        "--icon",
        metavar="PATH",
        help="icon file or http(s) URL (PNG/JPEG are converted to ICNS)",
    )
    parser.add_argument(
        "--assets",
        metavar="PATH",
        help="Assets.car file to apply (macOS 26+)",
    )
    parser.add_argument(
        "--build-client-app",
        action="store_true",
        help=f"also build {CLIENT_APP_NAME}.app, a launcher for emacsclient",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        metavar="N",
        help="number of parallel make jobs (default: cpu count)",
    )
    parser.add_argument(
        "--sign-identity",
        metavar="ID",
        help=f"codesign identity (default: ad-hoc '{ADHOC_IDENTITY}')",
    )
    parser.add_argument(
        "--no-sign",
        action="store_true",
        help="do not run codesign after build",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="print actions but don't run them",
    )
    parser.add_argument(
        "--skip-build",
        action="store_true",
        help="post-process an already built bundle",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="TOML config file (default: .macbuild.toml or macbuild.toml)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macbuild."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    try:
        load_dotenv()
        config = resolve_config(args)
        AppBuilder(config).run()
    except MacBuildError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
