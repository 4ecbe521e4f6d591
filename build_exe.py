"""
Build script for the PDF Manipulator portable Windows .exe

Usage:
    python build_exe.py

Output:
    dist/PDF_Manipulator.exe   (portable, no installer needed)

The OfficeToPDF conversion engine is downloaded from its latest GitHub release
into build_assets/ and bundled into the executable. On first run the app copies
it into %APPDATA%/pdf-manipulator (see engine_setup.py).

Requirements:
    pip install pyinstaller>=6.0 requests
"""

import subprocess
import sys
import os
import shutil
import time
from pathlib import Path

import requests

ROOT = Path(__file__).parent
ICON = ROOT / "assets" / "icon.ico"
ENTRY = ROOT / "pdf_manipulator_gui.py"
APP_NAME = "PDF_Manipulator"
ASSETS_DIR = ROOT / "build_assets"
ENGINE_NAME = "OfficeToPDF.exe"
OFFICETOPDF_RELEASE_URL = "https://api.github.com/repos/cognidox/OfficeToPDF/releases/latest"
GITHUB_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
    "User-Agent": "pdf-manipulator-build",
}


def fetch_engine(destination: Path = ASSETS_DIR / ENGINE_NAME, force: bool = False, timeout: int = 60) -> Path:
    """Download the OfficeToPDF executable from its latest release, unless already present."""
    if destination.exists() and not force:
        print(f"Using cached {destination.name}")
        return destination

    release = requests.get(OFFICETOPDF_RELEASE_URL, headers=GITHUB_HEADERS, timeout=timeout)
    release.raise_for_status()
    assets = release.json().get("assets", [])
    download_url = next(
        (asset["browser_download_url"] for asset in assets if asset.get("name") == ENGINE_NAME),
        None,
    )
    if not download_url:
        raise RuntimeError(f"Could not find {ENGINE_NAME} in the latest OfficeToPDF release.")

    print(f"Downloading {ENGINE_NAME} from {download_url}")
    response = requests.get(download_url, headers={"User-Agent": GITHUB_HEADERS["User-Agent"]}, timeout=timeout)
    response.raise_for_status()

    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(response.content)
    return destination


def cleanup_build_dirs():
    """Safely remove build and dist directories to prevent PyInstaller cleanup errors."""
    for dirname in ["build", "dist"]:
        dirpath = ROOT / dirname
        if dirpath.exists():
            try:
                print(f"Cleaning {dirname}/ directory...")
                shutil.rmtree(dirpath)
            except PermissionError:
                print(f"  WARNING: Could not fully remove {dirname}/ (may be locked)")
                print(f"  Attempting to continue anyway...")
            # Small delay to ensure OS releases file locks, even if deletion partially failed
            time.sleep(0.5)


def pyinstaller_command(engine_path: Path):
    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--onefile",
        "--windowed",           # no console window
        "--clean",
        f"--name={APP_NAME}",
        f"--add-binary={engine_path}{os.pathsep}.",
        "--hidden-import=pypdf",
        "--hidden-import=PIL",
        "--hidden-import=PIL._tkinter_finder",
        str(ENTRY),
    ]

    # Add icon if it exists
    if ICON.exists():
        cmd.insert(cmd.index("--clean"), f"--icon={ICON}")
    else:
        print(f"INFO: No icon found at {ICON} — building without icon.")
    return cmd


def main():
    if not ENTRY.exists():
        print(f"ERROR: Entry point not found: {ENTRY}")
        sys.exit(1)

    # Try to import PyInstaller; prompt to install if missing.
    try:
        import PyInstaller  # noqa: F401
    except ImportError:
        print("PyInstaller not found. Installing...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "pyinstaller>=6.0"])

    try:
        engine_path = fetch_engine()
    except (requests.RequestException, RuntimeError) as exc:
        print(f"ERROR: Could not obtain {ENGINE_NAME}: {exc}")
        sys.exit(1)

    # Clean up build directories before PyInstaller runs
    cleanup_build_dirs()

    cmd = pyinstaller_command(engine_path)

    print("\n" + "=" * 60)
    print(f"Building {APP_NAME}.exe ...")
    print("=" * 60)
    print(" ".join(str(c) for c in cmd))
    print()

    result = subprocess.run(cmd, cwd=ROOT)

    if result.returncode != 0:
        print("\nERROR: PyInstaller build failed (see output above).")
        sys.exit(result.returncode)

    exe_path = ROOT / "dist" / f"{APP_NAME}.exe"
    print("\n" + "=" * 60)
    if exe_path.exists():
        size_mb = exe_path.stat().st_size / (1024 * 1024)
        print(f"SUCCESS: {exe_path}  ({size_mb:.1f} MB)")
        print("Share this file with users — no Python installation needed.")
    else:
        print(f"WARNING: Build finished but {exe_path} not found. Check PyInstaller output.")
    print("=" * 60)


if __name__ == "__main__":
    main()
