"""Shared fixtures and fakes for the macbuild test suite."""

import plistlib
import subprocess
from pathlib import Path

import pytest

from macbuild import BuildConfig, CommandError, PlistlibStore

# Mach-O 64-bit magic number for creating fake executables
MACHO_MAGIC_64 = b"\xcf\xfa\xed\xfe"

DEFAULT_PLIST = {
    "CFBundleExecutable": "Emacs",
    "CFBundleIdentifier": "org.gnu.Emacs",
    "CFBundleIconFile": "Emacs.icns",
    "CFBundleShortVersionString": "30.1",
}


def create_fake_macho(path: Path, executable: bool = True) -> None:
    """Create a fake Mach-O file for testing."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(MACHO_MAGIC_64 + b"\x00" * 100)
    if executable:
        path.chmod(0o755)


def make_app(
    parent: Path,
    name: str = "Emacs",
    plist: dict | None = None,
    executable: bool = True,
) -> Path:
    """Create a minimal .app bundle and return its path."""
    app = parent / f"{name}.app"
    contents = app / "Contents"
    (contents / "MacOS").mkdir(parents=True)
    (contents / "Resources").mkdir()
    if executable:
        create_fake_macho(contents / "MacOS" / name)
    with open(contents / "Info.plist", "wb") as f:
        plistlib.dump(dict(plist or DEFAULT_PLIST), f)
    return app


def read_plist(path: Path) -> dict:
    with open(path, "rb") as f:
        return plistlib.load(f)


def plistlib_factory(plist: Path, runner) -> PlistlibStore:
    return PlistlibStore(plist, dry_run=runner.dry_run)


class RecordingSigner:
    """CodeSigner that records calls instead of running codesign."""

    def __init__(self, fail=(), fail_verify: bool = False):
        self.calls: list[tuple[str, Path]] = []
        self.fail = {Path(p) for p in fail}
        self.fail_verify = fail_verify

    def sign(self, path: Path) -> None:
        self.calls.append(("sign", Path(path)))
        if Path(path) in self.fail:
            raise CommandError(f"codesign {path}", 1)

    def verify(self, path: Path) -> None:
        self.calls.append(("verify", Path(path)))
        if self.fail_verify:
            raise CommandError(f"codesign --verify {path}", 1)

    @property
    def signed(self) -> list[Path]:
        return [path for action, path in self.calls if action == "sign"]


class FakeRasterizer:
    """IconRasterizer that writes placeholder files."""

    def __init__(self, fail_sizes=(), fail_pack: bool = False):
        self.fail_sizes = set(fail_sizes)
        self.fail_pack = fail_pack
        self.resized: list[int] = []
        self.packed: list[Path] = []

    def resize(self, source: Path, dest: Path, pixels: int) -> None:
        if pixels in self.fail_sizes:
            raise CommandError(f"sips -z {pixels}", 1)
        dest.write_bytes(b"png-%d" % pixels)
        self.resized.append(pixels)

    def pack(self, iconset_dir: Path, output: Path) -> None:
        if self.fail_pack:
            raise CommandError("iconutil", 1)
        output.write_bytes(b"icns-data")
        self.packed.append(iconset_dir)


def completed(command, returncode: int = 0, stdout: str = ""):
    return subprocess.CompletedProcess(command, returncode, stdout, "")


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def emacs_app(app_dir: Path) -> Path:
    return make_app(app_dir)


@pytest.fixture
def config(tmp_path: Path, app_dir: Path) -> BuildConfig:
    src = tmp_path / "src"
    src.mkdir()
    return BuildConfig(
        src_dir=src,
        app_dir=app_dir,
        jobs=4,
        skip_build=True,
    )
