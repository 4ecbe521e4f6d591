from pathlib import Path
import shutil
import os
import tempfile
import threading
import uuid

import pytest
from docx import Document
from pypdf import PdfWriter


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "codex_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def write_blank_pdf(path, pages: int = 1, width: int = 72) -> None:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=width, height=72)
    with open(path, "wb") as handle:
        writer.write(handle)


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(filename: str, pages: int = 1, width: int = 72) -> Path:
        path = tmp_path / filename
        write_blank_pdf(path, pages=pages, width=width)
        return path

    return _make


@pytest.fixture
def make_docx(tmp_path: Path):
    def _make(filename: str, text: str = "body") -> Path:
        path = tmp_path / filename
        document = Document()
        document.add_paragraph(text)
        document.save(path)
        return path

    return _make


class FakeEngine:
    """Records engine launches and waits made through subprocess.Popen."""

    def __init__(self, fail_contains: str = "", launch_error_contains: str = "", broken_contains: str = ""):
        self.fail_contains = fail_contains
        self.launch_error_contains = launch_error_contains
        self.broken_contains = broken_contains
        self.events = []
        self.processes = []
        self.live = 0
        self.max_live = 0
        self._lock = threading.Lock()

    def popen(self, args, **kwargs):
        engine = self

        _executable, input_path, output_path = args
        name = os.path.basename(input_path)
        if engine.launch_error_contains and engine.launch_error_contains in name:
            raise FileNotFoundError(2, "No such file or directory", args[0])

        class FakeProcess:
            def __init__(self):
                self.args = args
                self.kwargs = kwargs
                self.returncode = None

            def wait(self):
                if self.returncode is None:
                    failed = bool(engine.fail_contains) and engine.fail_contains in name
                    if engine.broken_contains and engine.broken_contains in name:
                        # Exits cleanly but leaves an unreadable file behind.
                        with open(output_path, "wb") as handle:
                            handle.write(b"not a pdf at all")
                    elif not failed:
                        write_blank_pdf(output_path)
                    self.returncode = 1 if failed else 0
                    with engine._lock:
                        engine.live -= 1
                        engine.events.append(("wait", name))
                return self.returncode

        process = FakeProcess()
        with self._lock:
            self.live += 1
            self.max_live = max(self.max_live, self.live)
            self.events.append(("launch", name))
            self.processes.append(process)
        return process


@pytest.fixture
def patch_engine(monkeypatch):
    def _patch(fail_contains: str = "", launch_error_contains: str = "", broken_contains: str = "") -> FakeEngine:
        engine = FakeEngine(
            fail_contains=fail_contains,
            launch_error_contains=launch_error_contains,
            broken_contains=broken_contains,
        )
        monkeypatch.setattr("pipeline_engine.subprocess.Popen", engine.popen)
        return engine

    return _patch


class FakeUI:
    def __init__(self):
        self.calls = []

    def set_controls_enabled(self, enabled):
        self.calls.append(("controls", enabled))

    def set_progress_indeterminate(self, running):
        self.calls.append(("progress", running))

    def show_error(self, title, message):
        self.calls.append(("error", title, message))

    def show_info(self, title, message):
        self.calls.append(("info", title, message))

    def of_kind(self, kind):
        return [call for call in self.calls if call[0] == kind]


class ManualScheduler:
    """Stands in for the UI event loop: callbacks run only when drained."""

    def __init__(self):
        self.callbacks = []
        self.scheduled = threading.Event()

    def __call__(self, callback):
        self.callbacks.append(callback)
        self.scheduled.set()

    def wait_and_drain(self, timeout: float = 10.0) -> int:
        assert self.scheduled.wait(timeout), "worker never signalled completion"
        self.scheduled.clear()
        callbacks, self.callbacks = self.callbacks, []
        for callback in callbacks:
            callback()
        return len(callbacks)


@pytest.fixture
def fake_ui():
    return FakeUI()


@pytest.fixture
def scheduler():
    return ManualScheduler()
