"""Tests for the command-line interface."""

import plistlib
import subprocess
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import macdmg
from macdmg import MagickEngine, main


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture(scope="module", autouse=True)
def dmgbuild_imported():
    """Import dmgbuild before sys.platform is faked, so mac_alias skips its
    darwin-only ctypes bindings."""
    with patch("platform.mac_ver", return_value=("14.5", ("", "", ""), "arm64")):
        import dmgbuild  # noqa: F401
    yield


@pytest.fixture(autouse=True)
def on_macos(monkeypatch):
    monkeypatch.setattr(macdmg.sys, "platform", "darwin")
    monkeypatch.delenv("MACDMG_IDENTITY", raising=False)
    monkeypatch.setattr(macdmg, "_config", None)


@pytest.fixture(autouse=True)
def macos_version():
    """dmgbuild parses the macOS version when it is first imported."""
    with patch("platform.mac_ver", return_value=("14.5", ("", "", ""), "arm64")):
        yield


@pytest.fixture(autouse=True)
def no_imagemagick():
    with patch.object(MagickEngine, "detect", return_value=None):
        yield


@pytest.fixture
def workdir(temp_dir, monkeypatch):
    """An empty working directory (no config, no license)."""
    path = temp_dir / "work"
    path.mkdir()
    monkeypatch.chdir(path)
    return path


@pytest.fixture
def app(temp_dir):
    bundle = temp_dir / "Fixture.app"
    (bundle / "Contents").mkdir(parents=True)
    with open(bundle / "Contents" / "Info.plist", "wb") as f:
        plistlib.dump(
            {"CFBundleName": "Fixture", "CFBundleShortVersionString": "0.0.1"}, f
        )
    return bundle


@pytest.fixture
def fake_build():
    def build_dmg(filename, volume_name, settings=None, callback=None, **kw):
        Path(filename).write_bytes(b"fake dmg")

    with patch("dmgbuild.build_dmg", side_effect=build_dmg) as mock:
        yield mock


def exit_code(argv):
    """Run main() and return its exit status."""
    try:
        main(argv)
    except SystemExit as e:
        return e.code
    return 0


class TestCLIArguments:
    """Tests for argument parsing."""

    def test_requires_app(self):
        result = subprocess.run(
            [sys.executable, "-m", "macdmg"],
            capture_output=True,
            text=True,
        )
        assert result.returncode != 0
        assert "app" in result.stderr.lower()

    def test_help(self):
        result = subprocess.run(
            [sys.executable, "-m", "macdmg", "--help"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        for flag in (
            "--overwrite",
            "--no-version-in-filename",
            "--identity",
            "--dmg-title",
            "--no-code-sign",
        ):
            assert flag in result.stdout

    def test_version(self, capsys):
        assert exit_code(["--version"]) == 0
        assert macdmg.__version__ in capsys.readouterr().out

    def test_not_macos(self, app, workdir, monkeypatch, fake_build):
        monkeypatch.setattr(macdmg.sys, "platform", "linux")
        assert exit_code([str(app), "--no-code-sign"]) == 1
        fake_build.assert_not_called()


class TestCLIExitCodes:
    """Tests for exit codes of the whole pipeline."""

    def test_success_without_signing(self, app, workdir, fake_build):
        assert exit_code([str(app), "--no-code-sign"]) == 0
        assert (workdir / "Fixture 0.0.1.dmg").exists()
        assert not (workdir / "Fixture.dmg").exists()

    def test_no_version_in_filename(self, app, workdir, fake_build):
        argv = [str(app), "--no-code-sign", "--no-version-in-filename"]
        assert exit_code(argv) == 0
        assert (workdir / "Fixture.dmg").exists()
        assert not (workdir / "Fixture 0.0.1.dmg").exists()

    def test_destination(self, app, workdir, temp_dir, fake_build):
        out = temp_dir / "releases"
        out.mkdir()
        assert exit_code([str(app), str(out), "--no-code-sign"]) == 0
        assert (out / "Fixture 0.0.1.dmg").exists()

    def test_missing_app(self, workdir, temp_dir, fake_build):
        assert exit_code([str(temp_dir / "Nope.app"), "--no-code-sign"]) == 1

    def test_title_too_long(self, app, workdir, fake_build):
        argv = [str(app), "--no-code-sign", "--dmg-title", "X" * 28]
        assert exit_code(argv) == 1
        fake_build.assert_not_called()

    def test_assembly_failure(self, app, workdir):
        with patch("dmgbuild.build_dmg", side_effect=RuntimeError("disk full")):
            assert exit_code([str(app), "--no-code-sign"]) == 1

    @patch("subprocess.run")
    def test_signing_failure_exit_2(self, mock_run, app, workdir, fake_build):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["codesign"], output="", stderr="0: no identity found"
        )
        assert exit_code([str(app), "--identity=0"]) == 2
        assert (workdir / "Fixture 0.0.1.dmg").exists()

    @patch("subprocess.run")
    def test_no_identity_exit_1(self, mock_run, app, workdir, fake_build):
        mock_run.return_value = MagicMock(
            returncode=0, stdout="     0 valid identities found\n"
        )
        assert exit_code([str(app)]) == 1

    @patch("subprocess.run")
    def test_verification_failure_exit_1(self, mock_run, app, workdir, fake_build):
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout=""),
            MagicMock(returncode=0, stdout="Executable=x\n"),
        ]
        assert exit_code([str(app), "--identity", "Mac Developer"]) == 1


class TestCLIConfig:
    """Tests for config file handling."""

    def test_title_from_config(self, app, workdir, fake_build):
        (workdir / ".macdmg.toml").write_text('[dmg]\ntitle = "Fixture Setup"\n')
        assert exit_code([str(app), "--no-code-sign"]) == 0
        assert fake_build.call_args[0][1] == "Fixture Setup"

    def test_cli_overrides_config(self, app, workdir, fake_build):
        (workdir / ".macdmg.toml").write_text('[dmg]\ntitle = "Fixture Setup"\n')
        assert exit_code([str(app), "--no-code-sign", "--dmg-title", "Fx"]) == 0
        assert fake_build.call_args[0][1] == "Fx"

    def test_explicit_config(self, app, workdir, temp_dir, fake_build):
        config = temp_dir / "release.toml"
        config.write_text('[dmg]\nformat = "UDZO"\n')
        argv = [str(app), "--no-code-sign", "--config", str(config)]
        assert exit_code(argv) == 0
        assert fake_build.call_args[1]["settings"]["format"] == "UDZO"

    def test_missing_config(self, app, workdir, temp_dir, fake_build):
        argv = [str(app), "--no-code-sign", "--config", str(temp_dir / "no.toml")]
        assert exit_code(argv) == 1

    def test_invalid_config(self, app, workdir, fake_build):
        (workdir / ".macdmg.toml").write_text("[dmg\n")
        assert exit_code([str(app), "--no-code-sign"]) == 1


class TestCLIIdentity:
    """Tests for where the signing identity comes from."""

    CONFIG = '[sign]\nidentity = "ConfigIdentity"\n'

    @staticmethod
    def signing_run():
        return [
            MagicMock(returncode=0, stdout="", stderr=""),
            MagicMock(returncode=0, stdout="Authority=Someone\n", stderr=""),
        ]

    @staticmethod
    def signed_with(mock_run):
        sign_command = mock_run.call_args_list[0][0][0]
        assert sign_command[:2] == ["codesign", "--sign"]
        return sign_command[2]

    @patch("subprocess.run")
    def test_config_identity(self, mock_run, app, workdir, fake_build):
        (workdir / ".macdmg.toml").write_text(self.CONFIG)
        mock_run.side_effect = self.signing_run()
        assert exit_code([str(app)]) == 0
        assert self.signed_with(mock_run) == "ConfigIdentity"

    @patch("subprocess.run")
    def test_env_over_config(self, mock_run, app, workdir, fake_build, monkeypatch):
        (workdir / ".macdmg.toml").write_text(self.CONFIG)
        monkeypatch.setenv("MACDMG_IDENTITY", "EnvIdentity")
        mock_run.side_effect = self.signing_run()
        assert exit_code([str(app)]) == 0
        assert self.signed_with(mock_run) == "EnvIdentity"

    @patch("subprocess.run")
    def test_cli_over_env(self, mock_run, app, workdir, fake_build, monkeypatch):
        (workdir / ".macdmg.toml").write_text(self.CONFIG)
        monkeypatch.setenv("MACDMG_IDENTITY", "EnvIdentity")
        mock_run.side_effect = self.signing_run()
        assert exit_code([str(app), "--identity", "CliIdentity"]) == 0
        assert self.signed_with(mock_run) == "CliIdentity"
