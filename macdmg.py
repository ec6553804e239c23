#!/usr/bin/env python3
"""macdmg - create a signed, good-looking DMG installer for a macOS app.

This module provides tools for:
1. Reading application metadata from a bundle's Info.plist
2. Composing a volume icon by laying the app icon onto a drive icon
3. Building a disk image with a fixed drag-to-Applications layout
4. Embedding a software license agreement when one is present
5. Code signing the disk image and verifying the signature

The disk image itself is built by dmgbuild; icon composition uses
ImageMagick when it is installed and falls back to the plain drive
icon when it is not.

Usage (CLI):
    macdmg Lungo.app
    macdmg Lungo.app Build/Releases --overwrite
    macdmg Lungo.app --dmg-title "Lungo" --no-code-sign

Usage (API):
    from macdmg import DmgCreator, make_dmg

    # High-level: run the whole pipeline
    context = DmgCreator("Lungo.app", destination="dist").process()
    print(context.dmg_path)

    # Functional
    dmg_path = make_dmg("Lungo.app", code_sign=False)
"""

import argparse
import concurrent.futures
import datetime
import itertools
import logging
import os
import plistlib
import re
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import icnsfile

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str
ProgressCallback = Callable[[str], None]

# Environment variable names
ENV_IDENTITY = "MACDMG_IDENTITY"

# Drive icon shipped with macOS, used as the template for composed icons
DEFAULT_TEMPLATE_ICON = Path(
    "/System/Library/Extensions/IOStorageFamily.kext"
    "/Contents/Resources/Removable.icns"
)

# dmgbuild draws its own arrow background when given this name
DEFAULT_BACKGROUND = "builtin-arrow"

# ULFO requires macOS 10.11+, APFS requires macOS 10.13+
DEFAULT_DMG_FORMAT = "ULFO"
DEFAULT_FILESYSTEM = "APFS"
DEFAULT_ICON_SIZE = 160

# Finder window layout
WINDOW_ORIGIN = (100, 100)
WINDOW_SIZE = (660, 400)
APP_ICON_LOCATION = (180, 170)
APPLICATIONS_ICON_LOCATION = (480, 170)
APPLICATIONS_LINK = "/Applications"

# Volume names longer than this break Finder aliases in the .DS_Store
MAX_TITLE_LENGTH = 27

DEFAULT_VERSION = "0.0.0"

# Geometry of the app icon drawn onto the drive icon
PERSPECTIVE_INSET = 0.08
OVERLAY_WIDTH_DIVISOR = 1.58
OVERLAY_HEIGHT_DIVISOR = 1.82
OVERLAY_RISE = 0.063

# Signing identities in order of preference
IDENTITY_PRECEDENCE = (
    "Developer ID Application",
    "Mac Developer",
    "Apple Development",
)

# Looked up in the working directory, first match wins
LICENSE_FILENAMES = ("license.rtf", "license.txt")

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class DmgError(Exception):
    """Base exception class for macdmg errors."""

    exit_code = 1


class CommandError(DmgError):
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


class ConfigurationError(DmgError):
    """Exception raised when configuration is invalid."""


class FileError(DmgError):
    """Exception raised when a file operation fails."""


class InputNotFoundError(DmgError):
    """The app bundle or its Info.plist does not exist."""


class MetadataError(DmgError):
    """Info.plist cannot be parsed or lacks a name."""


class UnsupportedTitleError(DmgError):
    """The volume title is longer than MAX_TITLE_LENGTH."""


class ComposeIconError(DmgError):
    """Icon composition was attempted and failed."""


class AssemblyError(DmgError):
    """The disk image could not be built."""


class LicenseInjectionError(DmgError):
    """A license file was found but could not be embedded."""

    exit_code = 2


class SigningIdentityNotFoundError(DmgError):
    """No usable code signing identity is installed."""


class SigningFailedError(DmgError):
    """codesign failed; the DMG exists but is not signed."""

    exit_code = 2


class VerificationError(DmgError):
    """The signed DMG does not report a signing authority."""


class FinalizeError(DmgError):
    """Unexpected failure after the DMG was built."""

    exit_code = 2


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macdmg.toml in current directory
    3. macdmg.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the explicit file is missing or a file
            cannot be parsed

    Example .macdmg.toml:
        [dmg]
        title = "Lungo"
        background = "assets/dmg-background.png"
        format = "UDZO"

        [sign]
        identity = "Developer ID Application: John Doe (ABCD123456)"
    """
    # Try to import tomllib (Python 3.11+) or tomli as fallback
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macdmg.toml",
            cwd / "macdmg.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "dmg", "sign")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A simple terminal spinner for long-running operations.

    The text can be changed while spinning, which is how pipeline
    stages and dmgbuild steps report what is going on.

    Example:
        with ProgressSpinner("Creating DMG") as spinner:
            spinner.update("Creating icon")
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = ""):
        self.message = message
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._width = 0

    def update(self, message: str) -> None:
        """Replace the spinner text."""
        self.message = message

    def _write(self, line: str) -> None:
        # pad to overwrite leftovers of a longer previous message
        padding = " " * max(0, self._width - len(line))
        self._width = len(line)
        sys.stdout.write(f"\r{line}{padding}")
        sys.stdout.flush()

    def _spin(self) -> None:
        """Spinner thread function."""
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            self._write(f"{self.message} {next(spinner)} ")
            time.sleep(0.1)

    def start(self) -> None:
        """Start the spinner."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self, status: str = "done") -> None:
        """Stop the spinner."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._write(f"{self.message} {status}")
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._thread = None

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, exc_type: object, *args: object) -> None:
        self.stop("done" if exc_type is None else "failed")


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
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
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
    merge_stderr: bool = False,
) -> str:
    """Run a command and return its output.

    This is the consolidated command execution utility used throughout
    the module. It provides consistent error handling and uses
    shell=False for security.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output
        merge_stderr: If True, stderr is folded into the returned output
            (codesign --display reports on stderr)

    Returns:
        The command output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Application metadata


@dataclass(frozen=True)
class AppBundleMetadata:
    """What the pipeline needs to know about an app bundle."""

    display_name: str
    version: str
    icon_file_base_name: str | None = None


def _parse_plist(data: bytes) -> dict[str, object]:
    info = plistlib.loads(data)
    if not isinstance(info, dict):
        raise ValueError("top-level object is not a dictionary")
    return info


def read_app_metadata(app_path: Pathlike) -> AppBundleMetadata:
    """Read name, version and icon file from an app's Info.plist.

    XML and binary plists are parsed directly; anything else is run
    through ``plutil -convert xml1`` first.

    Args:
        app_path: Path to the .app bundle

    Returns:
        The bundle metadata

    Raises:
        InputNotFoundError: If the bundle or its Info.plist is missing
        MetadataError: If the plist is unreadable or has no name
    """
    log = logging.getLogger("macdmg")
    plist_path = Path(app_path) / "Contents" / "Info.plist"

    try:
        data = plist_path.read_bytes()
    except FileNotFoundError as e:
        raise InputNotFoundError(f"Could not find `{app_path}`") from e
    except OSError as e:
        raise MetadataError(f"Cannot read {plist_path}: {e}") from e

    try:
        info = _parse_plist(data)
    except Exception as e:  # plistlib raises several unrelated types
        log.debug("direct parse of %s failed (%s), trying plutil", plist_path, e)
        try:
            converted = run_command(
                ["plutil", "-convert", "xml1", "-o", "-", str(plist_path)],
                log=log,
            )
            info = _parse_plist(converted.encode("utf-8"))
        except Exception as e2:
            raise MetadataError(
                f"Could not parse {plist_path}: {e2}"
            ) from e2

    name = info.get("CFBundleDisplayName") or info.get("CFBundleName")
    if not name:
        raise MetadataError(
            "The app must have `CFBundleDisplayName` or `CFBundleName` "
            "defined in its `Info.plist`."
        )

    icon_file = info.get("CFBundleIconFile")
    if icon_file:
        icon_file = re.sub(r"\.icns$", "", str(icon_file))

    return AppBundleMetadata(
        display_name=str(name),
        version=str(info.get("CFBundleShortVersionString") or DEFAULT_VERSION),
        icon_file_base_name=icon_file or None,
    )


# ----------------------------------------------------------------------------
# Icon composition


class MagickEngine:
    """Thin wrapper over the ImageMagick command line tools.

    Args:
        convert: Command prefix that converts images (``magick`` on
            ImageMagick 7, ``convert`` on ImageMagick 6)
        identify: Command prefix that reports image geometry
    """

    # no timestamps or other volatile chunks, so output is reproducible
    PNG_OUTPUT = ["-strip", "-define", "png:exclude-chunks=date,time"]

    def __init__(self, convert: list[str], identify: list[str]):
        self.convert = convert
        self.identify = identify
        self.log = logging.getLogger(self.__class__.__name__)

    @classmethod
    def detect(cls) -> "MagickEngine | None":
        """Find an installed ImageMagick, or return None."""
        magick = shutil.which("magick")
        if magick:
            return cls([magick], [magick, "identify"])
        convert = shutil.which("convert")
        identify = shutil.which("identify")
        if convert and identify:
            return cls([convert], [identify])
        return None

    def run_command(self, command: list[str]) -> str:
        """Run an ImageMagick command."""
        return run_command(command, log=self.log)

    def size(self, path: Path) -> tuple[int, int]:
        """Return (width, height) of the first frame of an image."""
        output = self.run_command(
            self.identify + ["-format", "%w %h", f"{path}[0]"]
        )
        try:
            width, height = (int(v) for v in output.split()[:2])
        except ValueError as e:
            raise ComposeIconError(
                f"Cannot read the size of {path}: {output!r}"
            ) from e
        return width, height

    def perspective(
        self,
        src: Path,
        dest: Path,
        size: tuple[int, int],
        target: tuple[int, int],
    ) -> None:
        """Tilt an image backwards and squash it into target size.

        The top edge is pulled in by PERSPECTIVE_INSET of the width on
        each side and the bottom edge stays put, so the image looks like
        it is lying on the drive. Aspect ratio is not kept on resize.
        """
        width, height = size
        inset = width * PERSPECTIVE_INSET
        points = (
            f"1,1 {inset:g},1  "
            f"{width},1 {width - inset:g},1  "
            f"1,{height} 1,{height}  "
            f"{width},{height} {width},{height}"
        )
        self.run_command(
            self.convert
            + [
                str(src),
                "-alpha",
                "set",
                "-virtual-pixel",
                "transparent",
                "-distort",
                "Perspective",
                points,
                "-resize",
                f"{target[0]}x{target[1]}!",
            ]
            + self.PNG_OUTPUT
            + [f"png32:{dest}"]
        )

    def composite(
        self, base: Path, overlay: Path, dest: Path, rise: int
    ) -> None:
        """Draw overlay centered on base, moved up by rise pixels."""
        self.run_command(
            self.convert
            + [
                str(base),
                str(overlay),
                "-gravity",
                "center",
                "-geometry",
                f"+0-{rise}",
                "-composite",
            ]
            + self.PNG_OUTPUT
            + [f"png32:{dest}"]
        )


class TemplateIconComposer:
    """Used when no raster engine is installed: the drive icon as is."""

    def __init__(self, template_icon: Pathlike):
        self.template_icon = Path(template_icon)
        self.log = logging.getLogger(self.__class__.__name__)

    def compose(self, app_icon: Pathlike) -> Path | None:
        """Return the template icon (or None if it does not exist)."""
        self.log.info(
            "ImageMagick not found, using the plain drive icon for %s",
            Path(app_icon).name,
        )
        return self.template_icon if self.template_icon.exists() else None


class IconComposer:
    """Composes a volume icon by overlaying an app icon on a drive icon.

    Every resolution variant the app icon and the template have in
    common is composed concurrently. The largest variant (ic10) is always
    produced when the template has one, using the largest app variant if
    the app does not ship a native one.

    Args:
        engine: The raster engine
        template_icon: Path to the drive icon (.icns)
        scratch_dir: Directory for intermediate and output files
        max_workers: Thread pool size (default: executor default)

    Example:
        composer = IconComposer(MagickEngine.detect(), DEFAULT_TEMPLATE_ICON,
                                scratch_dir)
        icon = composer.compose("Lungo.app/Contents/Resources/AppIcon.icns")
    """

    def __init__(
        self,
        engine: MagickEngine,
        template_icon: Pathlike,
        scratch_dir: Pathlike,
        max_workers: int | None = None,
    ):
        self.engine = engine
        self.template_icon = Path(template_icon)
        self.scratch_dir = Path(scratch_dir)
        self.max_workers = max_workers
        self.log = logging.getLogger(self.__class__.__name__)

    def read_container(self, path: Path) -> icnsfile.IconContainer:
        """Read an .icns file, keeping resolution variants only."""
        try:
            return icnsfile.filter_image_types(icnsfile.read(path))
        except (OSError, icnsfile.IcnsError) as e:
            raise ComposeIconError(f"Cannot read icon {path}: {e}") from e

    def compose_variant(
        self,
        icon_type: str,
        app_image: bytes,
        template_image: bytes,
        source_type: str | None = None,
    ) -> bytes:
        """Compose a single variant and return the resulting PNG data."""
        workdir = self.scratch_dir / f"{icon_type}-{source_type or icon_type}"
        workdir.mkdir(parents=True, exist_ok=True)
        app = workdir / "app"
        template = workdir / "template"
        distorted = workdir / "app-distorted.png"
        composed = workdir / "composed.png"
        app.write_bytes(app_image)
        template.write_bytes(template_image)

        app_size = self.engine.size(app)
        width, height = self.engine.size(template)

        target = (
            round(width / OVERLAY_WIDTH_DIVISOR),
            round(height / OVERLAY_HEIGHT_DIVISOR),
        )
        self.engine.perspective(app, distorted, app_size, target)
        self.engine.composite(
            template, distorted, composed, round(height * OVERLAY_RISE)
        )
        self.log.debug("composed %s (%dx%d)", icon_type, width, height)
        return composed.read_bytes()

    def compose_all(
        self,
        app_icons: icnsfile.IconContainer,
        template_icons: icnsfile.IconContainer,
    ) -> icnsfile.IconContainer:
        """Compose every shared variant plus the mandatory largest one."""
        shared = [t for t in app_icons if t in template_icons]
        for icon_type in app_icons:
            if icon_type not in template_icons:
                self.log.warning(
                    "There is no base image for this type: %s", icon_type
                )

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers
        ) as pool:
            futures = {
                icon_type: pool.submit(
                    self.compose_variant,
                    icon_type,
                    app_icons[icon_type],
                    template_icons[icon_type],
                )
                for icon_type in shared
            }
            # keyed by type, so completion order does not matter
            composed = {t: f.result() for t, f in futures.items()}

        largest = icnsfile.LARGEST_TYPE
        if largest not in composed and app_icons and largest in template_icons:
            source_type = max(app_icons, key=lambda t: len(app_icons[t]))
            self.log.info(
                "No native %s variant, composing it from %s",
                largest,
                source_type,
            )
            composed[largest] = self.compose_variant(
                largest,
                app_icons[source_type],
                template_icons[largest],
                source_type,
            )
        return composed

    def compose(self, app_icon: Pathlike) -> Path | None:
        """Compose the volume icon for an app icon file.

        Args:
            app_icon: Path to the app's .icns file

        Returns:
            Path to the composed .icns file in the scratch directory

        Raises:
            ComposeIconError: If an icon cannot be read or ImageMagick fails
        """
        app_icon = Path(app_icon)
        template_icons = self.read_container(self.template_icon)
        app_icons = self.read_container(app_icon)

        self.log.info("Composing icon from %s", app_icon.name)
        try:
            composed = self.compose_all(app_icons, template_icons)
        except CommandError as e:
            raise ComposeIconError(
                f"Composing {app_icon.name} failed: {e}\n{e.output or ''}"
            ) from e
        except OSError as e:
            raise ComposeIconError(f"Composing {app_icon.name} failed: {e}") from e

        if not composed:
            self.log.warning(
                "%s has no variant matching the drive icon, "
                "using the plain drive icon",
                app_icon.name,
            )
            return self.template_icon

        output = self.scratch_dir / "composed.icns"
        try:
            icnsfile.write(output, composed)
        except OSError as e:
            raise ComposeIconError(f"Cannot write {output}: {e}") from e
        return output


def resolve_icon_composer(
    template_icon: Pathlike,
    scratch_dir: Pathlike,
    max_workers: int | None = None,
) -> IconComposer | TemplateIconComposer:
    """Pick the composer once, depending on whether ImageMagick exists."""
    engine = MagickEngine.detect()
    if engine is None:
        return TemplateIconComposer(template_icon)
    logging.getLogger("macdmg").debug("using ImageMagick: %s", engine.convert[0])
    return IconComposer(engine, template_icon, scratch_dir, max_workers)


# ----------------------------------------------------------------------------
# Disk image assembly


def build_dmg_settings(
    app_path: Pathlike,
    icon: Pathlike | None = None,
    background: str | None = DEFAULT_BACKGROUND,
    icon_size: int = DEFAULT_ICON_SIZE,
    dmg_format: str = DEFAULT_DMG_FORMAT,
    filesystem: str = DEFAULT_FILESYSTEM,
) -> dict[str, object]:
    """Build the dmgbuild settings for the drag-to-Applications layout."""
    app_path = Path(app_path)
    settings: dict[str, object] = {
        "format": dmg_format,
        "filesystem": filesystem,
        "files": [str(app_path)],
        "symlinks": {"Applications": APPLICATIONS_LINK},
        "icon_locations": {
            app_path.name: APP_ICON_LOCATION,
            "Applications": APPLICATIONS_ICON_LOCATION,
        },
        "window_rect": (WINDOW_ORIGIN, WINDOW_SIZE),
        "icon_size": icon_size,
        "show_status_bar": False,
        "show_toolbar": False,
        "show_sidebar": False,
    }
    if background:
        settings["background"] = background
    if icon:
        settings["icon"] = str(icon)
    return settings


def assemble_dmg(
    dmg_path: Pathlike,
    app_path: Pathlike,
    title: str,
    icon: Pathlike | None = None,
    background: str | None = DEFAULT_BACKGROUND,
    icon_size: int = DEFAULT_ICON_SIZE,
    dmg_format: str = DEFAULT_DMG_FORMAT,
    filesystem: str = DEFAULT_FILESYSTEM,
    progress: ProgressCallback | None = None,
) -> Path:
    """Build the disk image with dmgbuild.

    Args:
        dmg_path: Output path
        app_path: The .app bundle to put in the image
        title: Volume name
        icon: Volume icon (.icns) or None for the default
        background: Background image path, color or "builtin-arrow"
        icon_size: Finder icon size
        dmg_format: hdiutil image format
        filesystem: Image filesystem
        progress: Called with the title of each build step

    Returns:
        Path to the created DMG

    Raises:
        AssemblyError: If dmgbuild fails
    """
    log = logging.getLogger("macdmg")
    dmg_path = Path(dmg_path)
    settings = build_dmg_settings(
        app_path, icon, background, icon_size, dmg_format, filesystem
    )

    def callback(event: dict[str, object]) -> None:
        log.debug("dmgbuild: %s", event)
        if progress and event.get("type") == "operation::start":
            progress(str(event.get("operation", "Processing")))

    log.info("Building %s", dmg_path)
    try:
        # dmgbuild reads the macOS version at import time
        import dmgbuild

        dmgbuild.build_dmg(
            str(dmg_path), title, settings=settings, callback=callback
        )
    except Exception as e:  # dmgbuild has no common base exception
        raise AssemblyError(f"Building the DMG failed. {e}") from e

    if not dmg_path.exists():
        raise AssemblyError(f"Building the DMG failed: {dmg_path} missing")
    return dmg_path


# ----------------------------------------------------------------------------
# Software license agreement


def find_license(search_dir: Pathlike | None = None) -> Path | None:
    """Return the license file in search_dir (default: cwd), if any."""
    search_dir = Path(search_dir) if search_dir else Path.cwd()
    for name in LICENSE_FILENAMES:
        candidate = search_dir / name
        if candidate.is_file():
            return candidate
    return None


def add_license_agreement(
    dmg_path: Pathlike,
    search_dir: Pathlike | None = None,
) -> Path | None:
    """Embed a license agreement into the DMG if a license file exists.

    dmgbuild turns the license into the resources of a license window
    (RTF when the file is RTF, plain text otherwise), which hdiutil
    then attaches to the finished image in place.

    Args:
        dmg_path: The disk image to modify
        search_dir: Where to look for license.rtf / license.txt

    Returns:
        The license file that was embedded, or None

    Raises:
        LicenseInjectionError: If a license exists but embedding fails
    """
    log = logging.getLogger("macdmg")
    license_file = find_license(search_dir)
    if license_file is None:
        log.debug("No license file found")
        return None

    dmg_path = Path(dmg_path)
    log.info("Adding license agreement from %s", license_file.name)
    with tempfile.TemporaryDirectory(prefix="macdmg-sla-") as tmp:
        resources_path = Path(tmp) / "license.plist"
        try:
            from dmgbuild import licensing

            # a path, so dmgbuild can tell RTF from plain text
            resources = licensing.build_license(
                {"licenses": {"en_US": str(license_file)}}
            )
            with open(resources_path, "wb") as f:
                plistlib.dump(resources, f)
            run_command(
                [
                    "hdiutil",
                    "udifrez",
                    "-xml",
                    str(resources_path),
                    "",
                    "-quiet",
                    str(dmg_path),
                ],
                log=log,
            )
        except CommandError as e:
            raise LicenseInjectionError(
                f"Adding the license agreement failed: {e}\n{e.output or ''}"
            ) from e
        except Exception as e:  # dmgbuild raises plain Exception
            raise LicenseInjectionError(
                f"Adding the license agreement failed: {e}"
            ) from e
    return license_file


# ----------------------------------------------------------------------------
# Codesigning


class DmgSigner:
    """Code signs a disk image and verifies the signature.

    Args:
        dmg_path: Path to the DMG to sign
        identity: Signing identity; when not given, MACDMG_IDENTITY is used,
            and failing that the best installed identity is picked

    Example:
        signer = DmgSigner("Lungo 1.0.dmg")
        authority = signer.process()
    """

    AUTHORITY_PATTERN = re.compile(r"^Authority=(.*)$", re.MULTILINE)

    def __init__(self, dmg_path: Pathlike, identity: str | None = None):
        self.dmg_path = Path(dmg_path)
        if identity is None:
            identity = os.getenv(ENV_IDENTITY)
        # explicit identities are passed to codesign unchecked, which
        # accepts both names and SHA-1 hashes
        self.identity = identity or None
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str], merge_stderr: bool = False) -> str:
        """Run a command and return its output."""
        return run_command(command, log=self.log, merge_stderr=merge_stderr)

    @staticmethod
    def select_identity(listing: str) -> str | None:
        """Pick the preferred identity label present in listing."""
        for label in IDENTITY_PRECEDENCE:
            if label in listing:
                return label
        return None

    def resolve_identity(self) -> str:
        """Return the identity to sign with.

        Raises:
            SigningIdentityNotFoundError: If no suitable identity exists
        """
        if self.identity:
            return self.identity

        try:
            listing = self.run_command(
                ["security", "find-identity", "-v", "-p", "codesigning"]
            )
        except CommandError as e:
            raise SigningIdentityNotFoundError(
                f"Cannot list code signing identities: {e}"
            ) from e

        identity = self.select_identity(listing)
        if identity is None:
            raise SigningIdentityNotFoundError(
                "No suitable code signing identity found"
            )
        self.identity = identity
        return identity

    def sign(self) -> None:
        """Sign the DMG with the resolved identity.

        Raises:
            SigningFailedError: If codesign fails
        """
        identity = self.resolve_identity()
        self.log.info("Code signing %s", self.dmg_path.name)
        try:
            self.run_command(
                ["codesign", "--sign", identity, str(self.dmg_path)]
            )
        except CommandError as e:
            raise SigningFailedError((e.output or str(e)).strip()) from e

    def verify(self) -> str:
        """Return the signing authority reported by codesign.

        Raises:
            VerificationError: If the DMG reports no authority
        """
        try:
            output = self.run_command(
                ["codesign", str(self.dmg_path), "--display", "--verbose=2"],
                merge_stderr=True,
            )
        except CommandError as e:
            raise VerificationError(f"Not code signed: {e}") from e

        match = self.AUTHORITY_PATTERN.search(output)
        if not match:
            raise VerificationError("Not code signed")
        authority = match.group(1).strip()
        self.log.info("Code signing identity: %s", authority)
        return authority

    def process(self) -> str:
        """Resolve the identity, sign and verify; return the authority."""
        self.sign()
        return self.verify()


# ----------------------------------------------------------------------------
# Pipeline


@dataclass
class RunContext:
    """State of one DmgCreator run, passed from stage to stage."""

    app_path: Path
    destination: Path
    metadata: AppBundleMetadata | None = None
    title: str | None = None
    dmg_filename: str | None = None
    dmg_path: Path | None = None
    icon_path: Path | None = None
    identity: str | None = None
    authority: str | None = None
    signed: bool = False


class DmgCreator:
    """Turns an app bundle into a DMG installer.

    Stages run strictly in order and stop at the first fatal error:
    read metadata, check title, prepare destination, compose icon,
    assemble, add license, sign and verify.

    Args:
        app: Path to the .app bundle
        destination: Output directory (default: current directory)
        overwrite: Delete an existing DMG of the same name first
        version_in_filename: Name the file "<name> <version>.dmg"
        identity: Signing identity (default: automatic)
        title: Volume title (default: app name)
        code_sign: Whether to sign and verify the DMG
        template_icon: Drive icon used as the base of the volume icon
        background: Background image, color or "builtin-arrow"
        icon_size: Finder icon size
        dmg_format: hdiutil image format
        filesystem: Image filesystem
        license_dir: Where to look for a license (default: cwd)
        progress: Called with a short status text at each step

    Example:
        creator = DmgCreator("Lungo.app", destination="dist", overwrite=True)
        context = creator.process()
    """

    def __init__(
        self,
        app: Pathlike,
        destination: Pathlike | None = None,
        overwrite: bool = False,
        version_in_filename: bool = True,
        identity: str | None = None,
        title: str | None = None,
        code_sign: bool = True,
        template_icon: Pathlike = DEFAULT_TEMPLATE_ICON,
        background: str | None = DEFAULT_BACKGROUND,
        icon_size: int = DEFAULT_ICON_SIZE,
        dmg_format: str = DEFAULT_DMG_FORMAT,
        filesystem: str = DEFAULT_FILESYSTEM,
        license_dir: Pathlike | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.app = Path(app)
        self.destination = Path(destination) if destination else Path.cwd()
        self.overwrite = overwrite
        self.version_in_filename = version_in_filename
        self.identity = identity
        self.title = title
        self.code_sign = code_sign
        self.template_icon = Path(template_icon)
        self.background = background
        self.icon_size = icon_size
        self.dmg_format = dmg_format
        self.filesystem = filesystem
        self.license_dir = license_dir
        self._progress = progress
        self.log = logging.getLogger(self.__class__.__name__)

    def progress(self, message: str) -> None:
        """Report a status message."""
        self.log.debug("%s", message)
        if self._progress:
            self._progress(message)

    def read_metadata(self, ctx: RunContext) -> None:
        """Read the bundle metadata and derive title and file name."""
        meta = read_app_metadata(ctx.app_path)
        ctx.metadata = meta
        ctx.title = self.title or meta.display_name
        if self.version_in_filename:
            ctx.dmg_filename = f"{meta.display_name} {meta.version}.dmg"
        else:
            ctx.dmg_filename = f"{meta.display_name}.dmg"
        ctx.dmg_path = ctx.destination / ctx.dmg_filename

    def validate_title(self, ctx: RunContext) -> None:
        """Reject titles the disk image layout cannot store."""
        assert ctx.title is not None
        if len(ctx.title) > MAX_TITLE_LENGTH:
            raise UnsupportedTitleError(
                f"The disk image title cannot exceed {MAX_TITLE_LENGTH} "
                f"characters: '{ctx.title}' has {len(ctx.title)}"
            )

    def prepare_destination(self, ctx: RunContext) -> None:
        """Check the output directory and clear an old DMG if asked to."""
        assert ctx.dmg_path is not None
        if not ctx.destination.is_dir():
            raise InputNotFoundError(
                f"Destination is not a directory: {ctx.destination}"
            )
        if self.overwrite:
            try:
                ctx.dmg_path.unlink()
                self.log.info("Removed existing %s", ctx.dmg_path.name)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise FileError(f"Cannot remove {ctx.dmg_path}: {e}") from e
        elif ctx.dmg_path.exists():
            raise AssemblyError(
                f"{ctx.dmg_path} already exists, use --overwrite to replace it"
            )

    def compose_icon(self, ctx: RunContext, scratch_dir: Path) -> None:
        """Compose the volume icon, or use the template when there is none."""
        assert ctx.metadata is not None
        icon_name = ctx.metadata.icon_file_base_name
        if not icon_name:
            self.log.info("App has no icon, using the plain drive icon")
            ctx.icon_path = (
                self.template_icon if self.template_icon.exists() else None
            )
            return

        self.progress("Creating icon")
        app_icon = ctx.app_path / "Contents" / "Resources" / f"{icon_name}.icns"
        composer = resolve_icon_composer(self.template_icon, scratch_dir)
        ctx.icon_path = composer.compose(app_icon)

    def assemble(self, ctx: RunContext) -> None:
        """Build the disk image."""
        assert ctx.dmg_path is not None and ctx.title is not None
        self.progress("Creating DMG")
        assemble_dmg(
            ctx.dmg_path,
            ctx.app_path,
            ctx.title,
            icon=ctx.icon_path,
            background=self.background,
            icon_size=self.icon_size,
            dmg_format=self.dmg_format,
            filesystem=self.filesystem,
            progress=self.progress,
        )

    def inject_license(self, ctx: RunContext) -> None:
        """Embed a license agreement if one is present."""
        assert ctx.dmg_path is not None
        self.progress("Adding Software License Agreement if needed")
        add_license_agreement(ctx.dmg_path, self.license_dir)

    def sign(self, ctx: RunContext) -> None:
        """Sign and verify the disk image."""
        assert ctx.dmg_path is not None
        self.progress("Code signing DMG")
        signer = DmgSigner(ctx.dmg_path, self.identity)
        ctx.identity = signer.resolve_identity()
        signer.sign()
        ctx.authority = signer.verify()
        ctx.signed = True

    def process(self) -> RunContext:
        """Run the whole pipeline.

        Returns:
            The final run context

        Raises:
            DmgError: The error of the first stage that failed
        """
        ctx = RunContext(app_path=self.app, destination=self.destination)
        self.log.info("Creating DMG for %s", self.app)

        with tempfile.TemporaryDirectory(prefix="macdmg-") as scratch:
            self.read_metadata(ctx)
            self.validate_title(ctx)
            self.prepare_destination(ctx)
            self.compose_icon(ctx, Path(scratch))
            self.assemble(ctx)

            # the DMG exists from here on
            try:
                self.inject_license(ctx)
                if self.code_sign:
                    self.sign(ctx)
                else:
                    self.log.info("Code signing skipped")
            except DmgError:
                raise
            except Exception as e:
                raise FinalizeError(f"{type(e).__name__}: {e}") from e

        self.log.info('Created "%s"', ctx.dmg_filename)
        return ctx


# ----------------------------------------------------------------------------
# Functional API


def make_dmg(
    app: Pathlike,
    destination: Pathlike | None = None,
    overwrite: bool = False,
    version_in_filename: bool = True,
    identity: str | None = None,
    title: str | None = None,
    code_sign: bool = True,
) -> Path:
    """Create a DMG installer for an app bundle.

    This is a convenience function that creates a DmgCreator instance
    and calls process() on it.

    Returns:
        Path to the created DMG

    Example:
        dmg_path = make_dmg("Lungo.app", destination="dist")
    """
    creator = DmgCreator(
        app=app,
        destination=destination,
        overwrite=overwrite,
        version_in_filename=version_in_filename,
        identity=identity,
        title=title,
        code_sign=code_sign,
    )
    ctx = creator.process()
    assert ctx.dmg_path is not None
    return ctx.dmg_path


# ----------------------------------------------------------------------------
# Command-line interface


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="macdmg",
        description="Create a good-looking DMG installer for a macOS app.",
        epilog=(
            "Examples:\n"
            "  macdmg 'Lungo.app'\n"
            "  macdmg 'Lungo.app' Build/Releases\n"
            "  macdmg 'Lungo.app' --no-code-sign --dmg-title Lungo\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "app",
        help="path to the .app bundle",
    )
    parser.add_argument(
        "destination",
        nargs="?",
        help="output directory (default: current directory)",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="overwrite existing DMG with the same name",
    )
    parser.add_argument(
        "--no-version-in-filename",
        action="store_true",
        help="exclude version number from DMG filename",
    )
    parser.add_argument(
        "--identity",
        metavar="ID",
        help=(
            "code signing identity (automatic by default, "
            f"or set {ENV_IDENTITY} env var)"
        ),
    )
    parser.add_argument(
        "--dmg-title",
        metavar="TITLE",
        help=(
            f"DMG title, must be <= {MAX_TITLE_LENGTH} characters "
            "(default: app name)"
        ),
    )
    parser.add_argument(
        "--no-code-sign",
        action="store_true",
        help="skip code signing the DMG",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="path to a TOML config file (default: .macdmg.toml)",
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


def _creator_from_args(
    args: argparse.Namespace, progress: ProgressCallback | None
) -> DmgCreator:
    """Merge CLI arguments over the config file into a DmgCreator."""
    config = load_config(Path(args.config)) if args.config else get_config()

    template_icon = get_config_value(config, "dmg", "template_icon")
    # command line, then environment, then config file
    identity = (
        args.identity
        or os.getenv(ENV_IDENTITY)
        or get_config_value(config, "sign", "identity")
    )
    return DmgCreator(
        app=args.app,
        destination=args.destination,
        overwrite=args.overwrite,
        version_in_filename=not args.no_version_in_filename,
        identity=identity,
        title=args.dmg_title or get_config_value(config, "dmg", "title"),
        code_sign=not args.no_code_sign,
        template_icon=template_icon or DEFAULT_TEMPLATE_ICON,
        background=get_config_value(
            config, "dmg", "background", DEFAULT_BACKGROUND
        ),
        dmg_format=get_config_value(
            config, "dmg", "format", DEFAULT_DMG_FORMAT
        ) or DEFAULT_DMG_FORMAT,
        filesystem=get_config_value(
            config, "dmg", "filesystem", DEFAULT_FILESYSTEM
        ) or DEFAULT_FILESYSTEM,
        progress=progress,
    )


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macdmg."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macdmg")

    if sys.platform != "darwin":
        log.error("macOS only")
        sys.exit(1)

    try:
        with ProgressSpinner("Creating DMG") as spinner:
            creator = _creator_from_args(args, spinner.update)
            creator.process()
    except SigningFailedError as e:
        log.error(
            "Code signing failed. The DMG is fine, just not code signed.\n%s",
            e,
        )
        sys.exit(e.exit_code)
    except DmgError as e:
        log.error("%s", e)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        log.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
