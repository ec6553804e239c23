"""Unit tests for reading app bundle metadata."""

import plistlib
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from macdmg import (
    AppBundleMetadata,
    InputNotFoundError,
    MetadataError,
    read_app_metadata,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


def make_app(parent, info, name="Fixture.app", fmt=plistlib.FMT_XML):
    """Create a minimal app bundle with the given Info.plist contents."""
    bundle = parent / name
    contents = bundle / "Contents"
    contents.mkdir(parents=True)
    with open(contents / "Info.plist", "wb") as f:
        plistlib.dump(info, f, fmt=fmt)
    return bundle


FIXTURE_INFO = {
    "CFBundleName": "Fixture",
    "CFBundleShortVersionString": "0.0.1",
    "CFBundleIconFile": "AppIcon.icns",
}


class TestReadAppMetadata:
    """Tests for read_app_metadata()."""

    def test_xml_plist(self, temp_dir):
        app = make_app(temp_dir, FIXTURE_INFO)
        meta = read_app_metadata(app)
        assert meta == AppBundleMetadata("Fixture", "0.0.1", "AppIcon")

    def test_binary_plist(self, temp_dir):
        app = make_app(temp_dir, FIXTURE_INFO, fmt=plistlib.FMT_BINARY)
        meta = read_app_metadata(app)
        assert meta.display_name == "Fixture"
        assert meta.version == "0.0.1"

    def test_display_name_preferred(self, temp_dir):
        info = dict(FIXTURE_INFO, CFBundleDisplayName="Fixture Pro")
        meta = read_app_metadata(make_app(temp_dir, info))
        assert meta.display_name == "Fixture Pro"

    def test_icon_without_extension(self, temp_dir):
        info = dict(FIXTURE_INFO, CFBundleIconFile="AppIcon")
        meta = read_app_metadata(make_app(temp_dir, info))
        assert meta.icon_file_base_name == "AppIcon"

    def test_no_icon(self, temp_dir):
        info = {"CFBundleName": "Fixture", "CFBundleShortVersionString": "1.2"}
        meta = read_app_metadata(make_app(temp_dir, info))
        assert meta.icon_file_base_name is None

    def test_missing_version_defaults(self, temp_dir):
        meta = read_app_metadata(make_app(temp_dir, {"CFBundleName": "Fixture"}))
        assert meta.version == "0.0.0"

    def test_missing_names_is_error(self, temp_dir):
        app = make_app(temp_dir, {"CFBundleShortVersionString": "0.0.1"})
        with pytest.raises(MetadataError, match="CFBundleDisplayName"):
            read_app_metadata(app)

    def test_missing_bundle(self, temp_dir):
        with pytest.raises(InputNotFoundError, match="Could not find"):
            read_app_metadata(temp_dir / "Missing.app")

    def test_metadata_is_immutable(self, temp_dir):
        meta = read_app_metadata(make_app(temp_dir, FIXTURE_INFO))
        with pytest.raises(AttributeError):
            meta.display_name = "Other"


class TestPlutilFallback:
    """Tests for the plutil conversion fallback."""

    @patch("subprocess.run")
    def test_fallback_to_plutil(self, mock_run, temp_dir):
        """Unparseable plists are converted by plutil and parsed again."""
        app = temp_dir / "Fixture.app"
        (app / "Contents").mkdir(parents=True)
        (app / "Contents" / "Info.plist").write_text(
            '{ CFBundleName = "Fixture"; }'
        )
        converted = plistlib.dumps(FIXTURE_INFO).decode("utf-8")
        mock_run.return_value = MagicMock(returncode=0, stdout=converted, stderr="")

        meta = read_app_metadata(app)

        assert meta.display_name == "Fixture"
        call_args = mock_run.call_args[0][0]
        assert call_args[:3] == ["plutil", "-convert", "xml1"]
        assert str(app / "Contents" / "Info.plist") in call_args

    @patch("subprocess.run")
    def test_fallback_fails(self, mock_run, temp_dir):
        """Both parses failing is a metadata error."""
        app = temp_dir / "Fixture.app"
        (app / "Contents").mkdir(parents=True)
        (app / "Contents" / "Info.plist").write_text("garbage")
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["plutil"], output="", stderr="bad plist"
        )

        with pytest.raises(MetadataError, match="Could not parse"):
            read_app_metadata(app)

    @patch("subprocess.run")
    def test_direct_parse_does_not_call_plutil(self, mock_run, temp_dir):
        read_app_metadata(make_app(temp_dir, FIXTURE_INFO))
        mock_run.assert_not_called()
