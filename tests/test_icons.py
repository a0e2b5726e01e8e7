"""Tests for icon conversion and installation."""

import dataclasses
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from iconset import (
    ICON_SIZES,
    find_resize_tool,
    iconset_entries,
    is_raster_image,
    pack_command,
    resize_command,
)
from macbuild import (
    AppBundle,
    CommandRunner,
    IconError,
    IconPipeline,
    PlistlibStore,
    SystemIconRasterizer,
)

from conftest import FakeRasterizer, completed, read_plist


class TestIconsetHelpers:
    """Tests for the iconset module."""

    def test_entries(self):
        entries = dict(iconset_entries())
        assert len(entries) == 2 * len(ICON_SIZES)
        assert entries["icon_16x16.png"] == 16
        assert entries["icon_16x16@2x.png"] == 32
        assert entries["icon_512x512@2x.png"] == 1024

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("icon.png", True),
            ("ICON.JPG", True),
            ("photo.jpeg", True),
            ("Emacs.icns", False),
            ("noext", False),
        ],
    )
    def test_is_raster_image(self, name, expected):
        assert is_raster_image(name) is expected

    def test_find_resize_tool_preference(self):
        available = {"sips", "convert"}
        tool = find_resize_tool(lambda name: name if name in available else None)
        assert tool == "convert"

    def test_find_resize_tool_none(self):
        assert find_resize_tool(lambda name: None) is None

    def test_resize_commands(self):
        assert resize_command("sips", "in.png", "out.png", 32) == [
            "sips", "-z", "32", "32", "in.png", "--out", "out.png",
        ]
        assert resize_command("magick", "in.png", "out.png", 32) == [
            "magick", "in.png", "-resize", "32x32", "out.png",
        ]
        with pytest.raises(ValueError):
            resize_command("gimp", "in.png", "out.png", 32)

    def test_pack_command(self):
        assert pack_command("a.iconset", "a.icns") == [
            "iconutil", "-c", "icns", "a.iconset", "-o", "a.icns",
        ]


class TestSystemIconRasterizer:
    """Tests for the system tool adapter."""

    def test_no_tool(self, tmp_path):
        rasterizer = SystemIconRasterizer(MagicMock(), tool=None)
        rasterizer.tool = None
        with pytest.raises(IconError, match="No image resize tool"):
            rasterizer.resize(tmp_path / "a.png", tmp_path / "b.png", 16)

    def test_resize_and_pack(self, tmp_path):
        runner = MagicMock()
        rasterizer = SystemIconRasterizer(runner, tool="sips")
        rasterizer.resize(Path("a.png"), Path("b.png"), 16)
        rasterizer.pack(Path("x.iconset"), Path("x.icns"))
        assert runner.run.call_args_list[0].args[0][0] == "sips"
        assert runner.run.call_args_list[1].args[0][0] == "iconutil"


@pytest.fixture
def icon_png(tmp_path: Path) -> Path:
    path = tmp_path / "icon.png"
    path.write_bytes(b"\x89PNG fake")
    return path


class TestResolveIconSource:
    """Tests for local and remote icon sources."""

    def test_local_path(self, config, icon_png, tmp_path):
        pipeline = IconPipeline(config, CommandRunner(), FakeRasterizer())
        assert pipeline.resolve_icon_source(str(icon_png), tmp_path) == icon_png

    def test_missing_local_path(self, config, tmp_path):
        pipeline = IconPipeline(config, CommandRunner(), FakeRasterizer())
        with pytest.raises(IconError, match="not found"):
            pipeline.resolve_icon_source(str(tmp_path / "nope.png"), tmp_path)

    @patch("macbuild.shutil.which", return_value="/usr/bin/curl")
    @patch("macbuild.subprocess.run")
    def test_url_downloaded_with_curl(self, mock_run, mock_which, config, tmp_path):
        mock_run.return_value = completed([])
        pipeline = IconPipeline(config, CommandRunner(), FakeRasterizer())
        source = pipeline.resolve_icon_source(
            "https://example.com/img/emacs.png?v=2", tmp_path
        )
        assert source == tmp_path / "download-emacs.png"
        command = mock_run.call_args.args[0]
        assert command[:3] == ["curl", "-fsSL", "-o"]
        assert command[-1] == "https://example.com/img/emacs.png?v=2"

    @patch("macbuild.subprocess.run")
    def test_url_downloaded_with_wget(self, mock_run, config, tmp_path):
        mock_run.return_value = completed([])
        which = {"wget": "/usr/bin/wget"}.get
        with patch("macbuild.shutil.which", side_effect=which):
            pipeline = IconPipeline(config, CommandRunner(), FakeRasterizer())
            pipeline.resolve_icon_source("http://example.com/e.png", tmp_path)
        assert mock_run.call_args.args[0][:3] == ["wget", "-q", "-O"]

    @patch("macbuild.shutil.which", return_value=None)
    def test_no_download_tool(self, mock_which, config, tmp_path):
        pipeline = IconPipeline(config, CommandRunner(), FakeRasterizer())
        with pytest.raises(IconError, match="Neither curl nor wget"):
            pipeline.resolve_icon_source("https://example.com/e.png", tmp_path)

    @patch("macbuild.shutil.which", return_value="/usr/bin/curl")
    @patch("macbuild.subprocess.run")
    def test_download_failure(self, mock_run, mock_which, config, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(22, ["curl"])
        pipeline = IconPipeline(config, CommandRunner(), FakeRasterizer())
        with pytest.raises(IconError, match="download failed"):
            pipeline.resolve_icon_source("https://example.com/e.png", tmp_path)


class TestRasterize:
    """Tests for conversion to .icns."""

    def test_icns_passes_through(self, config, tmp_path):
        icns = tmp_path / "Custom.icns"
        icns.write_bytes(b"icns")
        rasterizer = FakeRasterizer()
        pipeline = IconPipeline(config, CommandRunner(), rasterizer)
        assert pipeline.rasterize(icns, tmp_path) == icns
        assert rasterizer.resized == []

    def test_png_converted(self, config, icon_png, tmp_path):
        work = tmp_path / "work"
        work.mkdir()
        rasterizer = FakeRasterizer()
        pipeline = IconPipeline(config, CommandRunner(), rasterizer)
        output = pipeline.rasterize(icon_png, work)
        assert output == work / "Emacs.icns"
        assert output.read_bytes() == b"icns-data"
        assert sorted(rasterizer.resized) == sorted(
            pixels for _, pixels in iconset_entries()
        )
        assert rasterizer.packed == [work / "Emacs.iconset"]

    def test_failed_size_copies_source(self, config, icon_png, tmp_path):
        """Test a failing resize falls back to the unresized source."""
        work = tmp_path / "work"
        work.mkdir()
        pipeline = IconPipeline(
            config, CommandRunner(), FakeRasterizer(fail_sizes={1024})
        )
        pipeline.rasterize(icon_png, work)
        iconset = work / "Emacs.iconset"
        assert (iconset / "icon_512x512@2x.png").read_bytes() == b"\x89PNG fake"
        assert (iconset / "icon_512x512.png").read_bytes() == b"png-512"

    def test_pack_failure_is_icon_error(self, config, icon_png, tmp_path):
        pipeline = IconPipeline(
            config, CommandRunner(), FakeRasterizer(fail_pack=True)
        )
        with pytest.raises(IconError, match="Cannot pack"):
            pipeline.rasterize(icon_png, tmp_path)


class TestIconPipelineRun:
    """Tests for applying an icon to a bundle."""

    def run_pipeline(self, config, emacs_app, rasterizer=None):
        bundle = AppBundle(emacs_app, "Emacs")
        store = PlistlibStore(bundle.info_plist)
        pipeline = IconPipeline(config, CommandRunner(), rasterizer or FakeRasterizer())
        return bundle, pipeline.run(bundle, store)

    def test_nothing_to_do(self, config, emacs_app):
        _, applied = self.run_pipeline(config, emacs_app)
        assert applied is False

    def test_png_icon_applied(self, config, emacs_app, icon_png):
        config = dataclasses.replace(config, icon=str(icon_png))
        (emacs_app / "Contents" / "Resources" / "Assets.car").write_bytes(b"old")
        bundle, applied = self.run_pipeline(config, emacs_app)

        assert applied is True
        assert (bundle.resources / "Emacs.icns").read_bytes() == b"icns-data"
        assert not (bundle.resources / "Assets.car").exists()
        plist = read_plist(bundle.info_plist)
        assert plist["CFBundleIconFile"] == "Emacs"
        assert "CFBundleIconName" not in plist
        assert plist["CFBundleIcons"] == {
            "CFBundlePrimaryIcon": {
                "CFBundleIconFiles": ["Emacs"],
                "CFBundleIconName": "Emacs",
            }
        }

    def test_stale_icon_keys_removed(self, config, emacs_app, icon_png):
        config = dataclasses.replace(config, icon=str(icon_png))
        store = PlistlibStore(emacs_app / "Contents" / "Info.plist")
        store.add(":CFBundleIconFiles", ["Stale"])
        store.add(":CFBundleIconName", "Stale")
        bundle, _ = self.run_pipeline(config, emacs_app)
        plist = read_plist(bundle.info_plist)
        assert "CFBundleIconFiles" not in plist
        assert "CFBundleIconName" not in plist

    def test_asset_catalog(self, config, emacs_app, icon_png, tmp_path):
        assets = tmp_path / "custom.car"
        assets.write_bytes(b"car-data")
        config = dataclasses.replace(config, icon=str(icon_png), assets=assets)
        bundle, applied = self.run_pipeline(config, emacs_app)

        assert applied is True
        assert (bundle.resources / "Assets.car").read_bytes() == b"car-data"
        plist = read_plist(bundle.info_plist)
        assert plist["CFBundleIconName"] == "Emacs"

    def test_missing_assets_skips_icon(self, config, emacs_app, icon_png, tmp_path):
        config = dataclasses.replace(
            config, icon=str(icon_png), assets=tmp_path / "missing.car"
        )
        before = (emacs_app / "Contents" / "Info.plist").read_bytes()
        _, applied = self.run_pipeline(config, emacs_app)
        assert applied is False
        assert (emacs_app / "Contents" / "Info.plist").read_bytes() == before

    def test_missing_icon_is_warning(self, config, emacs_app, tmp_path, caplog):
        config = dataclasses.replace(config, icon=str(tmp_path / "nope.png"))
        bundle, applied = self.run_pipeline(config, emacs_app)
        assert applied is False
        assert "Icon file not found" in caplog.text
        assert not (bundle.resources / "Emacs.icns").exists()

    @patch("macbuild.shutil.which", return_value="/usr/bin/curl")
    @patch("macbuild.subprocess.run")
    def test_download_failure_preserves_bundle(
        self, mock_run, mock_which, config, emacs_app
    ):
        """Test a failed download skips the icon and leaves the bundle as is."""
        mock_run.side_effect = subprocess.CalledProcessError(22, ["curl"])
        resources = emacs_app / "Contents" / "Resources"
        (resources / "Emacs.icns").write_bytes(b"original")
        (resources / "Assets.car").write_bytes(b"original-car")
        plist_before = (emacs_app / "Contents" / "Info.plist").read_bytes()

        config = dataclasses.replace(config, icon="https://example.com/e.png")
        _, applied = self.run_pipeline(config, emacs_app)

        assert applied is False
        assert (resources / "Emacs.icns").read_bytes() == b"original"
        assert (resources / "Assets.car").read_bytes() == b"original-car"
        assert (emacs_app / "Contents" / "Info.plist").read_bytes() == plist_before

    def test_asset_catalog_failure_restores_icon(
        self, config, emacs_app, icon_png, caplog
    ):
        """Test a failing Assets.car step undoes the copied .icns."""
        resources = emacs_app / "Contents" / "Resources"
        (resources / "Emacs.icns").write_bytes(b"original")
        # a directory cannot be removed as a stale catalog file
        (resources / "Assets.car").mkdir()
        plist_before = read_plist(emacs_app / "Contents" / "Info.plist")

        config = dataclasses.replace(config, icon=str(icon_png))
        _, applied = self.run_pipeline(config, emacs_app)

        assert applied is False
        assert (resources / "Emacs.icns").read_bytes() == b"original"
        assert (resources / "Assets.car").is_dir()
        assert read_plist(emacs_app / "Contents" / "Info.plist") == plist_before
        assert "bundle keeps its existing icon" in caplog.text

    def test_install_failure_removes_new_icon(self, config, emacs_app, icon_png):
        """Test an icon that did not exist before is removed again."""
        config = dataclasses.replace(config, icon=str(icon_png))
        with patch.object(
            IconPipeline,
            "install_asset_catalog",
            side_effect=OSError("No space left on device"),
        ):
            bundle, applied = self.run_pipeline(config, emacs_app)

        assert applied is False
        assert not (bundle.resources / "Emacs.icns").exists()
        assert read_plist(bundle.info_plist)["CFBundleIconFile"] == "Emacs.icns"

    def test_refresh_failure_keeps_icon(self, config, emacs_app, icon_png, caplog):
        config = dataclasses.replace(config, icon=str(icon_png))
        with patch.object(CommandRunner, "touch", side_effect=OSError("busy")):
            bundle, applied = self.run_pipeline(config, emacs_app)

        assert applied is True
        assert (bundle.resources / "Emacs.icns").read_bytes() == b"icns-data"
        assert read_plist(bundle.info_plist)["CFBundleIconFile"] == "Emacs"
        assert "refresh failed: busy" in caplog.text

    def test_temporary_files_removed(self, config, emacs_app, icon_png):
        """Test the work directory is gone after the run."""
        seen = []

        class Recorder(FakeRasterizer):
            def pack(self, iconset_dir, output):
                seen.append(iconset_dir.parent)
                super().pack(iconset_dir, output)

        config = dataclasses.replace(config, icon=str(icon_png))
        self.run_pipeline(config, emacs_app, Recorder())
        assert seen and not seen[0].exists()

    def test_dry_run_leaves_bundle_untouched(self, config, emacs_app, icon_png):
        config = dataclasses.replace(config, icon=str(icon_png), dry_run=True)
        bundle = AppBundle(emacs_app, "Emacs")
        before = bundle.info_plist.read_bytes()
        rasterizer = MagicMock()
        pipeline = IconPipeline(config, CommandRunner(dry_run=True), rasterizer)
        pipeline.run(bundle, PlistlibStore(bundle.info_plist, dry_run=True))
        assert bundle.info_plist.read_bytes() == before
        assert not (bundle.resources / "Emacs.icns").exists()
