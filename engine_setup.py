"""
Conversion engine installation
Copies the bundled OfficeToPDF engine into the per-user application data
directory the first time the application runs, and reuses it afterwards.
"""

import hashlib
import os
import shutil
import sys
from pathlib import Path
from typing import Optional

APP_FOLDER_NAME = "pdf-manipulator"
ENGINE_FILENAME = "OfficeToPDF.exe"
ENGINE_SHA256_ENV = "PDF_MANIPULATOR_ENGINE_SHA256"


class EngineSetupError(RuntimeError):
    """Raised when the conversion engine cannot be installed or verified."""


def user_data_root() -> Path:
    """Per-user application data root (APPDATA on Windows, XDG data dir elsewhere)."""
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata)
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data)
    return Path.home() / ".local" / "share"


def app_data_dir(root: Optional[Path] = None) -> Path:
    return Path(root or user_data_root()) / APP_FOLDER_NAME


def logs_dir(root: Optional[Path] = None) -> Path:
    return app_data_dir(root) / "logs"


def bundled_engine_path() -> Path:
    """
    Location of the engine shipped with the application.
    PyInstaller unpacks --add-binary files under sys._MEIPASS; from a source
    checkout the build script leaves it in build_assets/.
    """
    bundle_root = getattr(sys, "_MEIPASS", None)
    if bundle_root:
        return Path(bundle_root) / ENGINE_FILENAME
    return Path(__file__).parent / "build_assets" / ENGINE_FILENAME


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def install_engine(
    data_root: Optional[Path] = None,
    source: Optional[Path] = None,
    expected_sha256: Optional[str] = None,
) -> Path:
    """
    Make sure the engine executable exists in the application data folder.

    The binary is written once. An existing copy is reused without being
    replaced, but is still checked against ``expected_sha256`` (or the
    PDF_MANIPULATOR_ENGINE_SHA256 environment variable) when one is given.

    Returns:
        Path to the installed engine executable
    """
    folder = app_data_dir(data_root)
    target = folder / ENGINE_FILENAME
    expected = (expected_sha256 or os.environ.get(ENGINE_SHA256_ENV, "")).strip().lower()

    try:
        folder.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise EngineSetupError(f"Could not create application folder '{folder}': {exc}") from exc

    if not target.exists():
        source = Path(source) if source else bundled_engine_path()
        if not source.is_file():
            raise EngineSetupError(
                f"The conversion engine was not found at '{source}'. "
                "Rebuild the application with build_exe.py to bundle it."
            )
        partial = target.with_name(target.name + ".partial")
        try:
            shutil.copy2(source, partial)
            os.replace(partial, target)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise EngineSetupError(f"Could not install the conversion engine to '{target}': {exc}") from exc
        print(f"Installed conversion engine: {target}")

    if expected:
        actual = _sha256(target)
        if actual != expected:
            raise EngineSetupError(
                f"Conversion engine at '{target}' failed integrity check "
                f"(expected sha256 {expected}, found {actual})."
            )

    return target
