import os
import stat
import subprocess
import sys
from pathlib import Path

import pytest
from pypdf import PdfReader

from pipeline_engine import EngineLaunchError, OfficeConverter, classify_documents


def _converter(tmp_path, **kwargs):
    return OfficeConverter("OfficeToPDF.exe", scratch_dir=str(tmp_path / "scratch"), **kwargs)


def test_all_processes_launch_before_any_wait(tmp_path, patch_engine):
    engine = patch_engine()
    _, convertible = classify_documents(["a.docx", "b.xlsx", "c.pptx"])

    converted = _converter(tmp_path).convert_files(convertible)

    assert len(converted) == 3
    assert engine.events == [
        ("launch", "a.docx"),
        ("launch", "b.xlsx"),
        ("launch", "c.pptx"),
        ("wait", "a.docx"),
        ("wait", "b.xlsx"),
        ("wait", "c.pptx"),
    ]
    assert engine.max_live == 3


def test_engine_is_invoked_with_input_and_output_and_no_stdio(tmp_path, patch_engine):
    engine = patch_engine()

    converted = _converter(tmp_path).convert_files(["report.docx"])

    process = engine.processes[0]
    assert process.args == ["OfficeToPDF.exe", "report.docx", converted[0]]
    assert process.kwargs["stdin"] is subprocess.DEVNULL
    assert process.kwargs["stdout"] is subprocess.DEVNULL
    if os.name == "nt":
        assert process.kwargs["creationflags"] == 0x08000000
    else:
        assert "creationflags" not in process.kwargs


def test_failed_conversion_is_dropped_and_order_kept(tmp_path, patch_engine):
    patch_engine(fail_contains="second")
    warnings = []
    source_map = {}
    converter = _converter(tmp_path, warnings=warnings)

    converted = converter.convert_files(
        ["first.docx", "second.docx", "third.docx"],
        source_file_map=source_map,
    )

    assert len(converted) == 2
    assert [source_map[path] for path in converted] == ["first.docx", "third.docx"]
    assert [w["code"] for w in warnings] == ["conversion_failed"]
    assert warnings[0]["file"] == "second.docx"
    for path in converted:
        assert len(PdfReader(path).pages) == 1


def test_scratch_paths_are_unique_across_runs(tmp_path, patch_engine):
    patch_engine()
    converter = _converter(tmp_path)
    documents = [f"doc{idx}.docx" for idx in range(25)]

    first = converter.convert_files(documents)
    second = converter.convert_files(documents)

    all_paths = first + second
    assert len(set(all_paths)) == len(all_paths) == 50
    scratch = str(tmp_path / "scratch")
    assert all(os.path.dirname(path) == scratch and path.endswith(".pdf") for path in all_paths)


def test_bounded_concurrency_keeps_submission_order(tmp_path, patch_engine):
    engine = patch_engine(fail_contains="d3")
    source_map = {}
    converter = _converter(tmp_path, max_concurrent=2)
    documents = [f"d{idx}.docx" for idx in range(6)]

    converted = converter.convert_files(documents, source_file_map=source_map)

    assert engine.max_live == 2
    assert [source_map[path] for path in converted] == ["d0.docx", "d1.docx", "d2.docx", "d4.docx", "d5.docx"]
    waits = [name for kind, name in engine.events if kind == "wait"]
    assert waits == documents


def test_max_concurrent_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        _converter(tmp_path, max_concurrent=0)


def test_launch_failure_aborts_after_reaping_started_processes(tmp_path, patch_engine):
    engine = patch_engine(launch_error_contains="b.")
    converter = _converter(tmp_path)

    with pytest.raises(EngineLaunchError, match="OfficeToPDF.exe"):
        converter.convert_files(["a.docx", "b.docx", "c.docx"])

    assert len(engine.processes) == 1
    assert engine.processes[0].returncode == 0
    assert ("launch", "c.docx") not in engine.events


def test_empty_batch_launches_nothing(tmp_path, patch_engine):
    engine = patch_engine()

    assert _converter(tmp_path).convert_files([]) == []
    assert engine.events == []


ENGINE_SCRIPT = """
import sys
import time

from pypdf import PdfWriter

source, target = sys.argv[1], sys.argv[2]
if "bad" in source:
    sys.exit(3)
if "slow" in source:
    time.sleep(0.5)
writer = PdfWriter()
writer.add_blank_page(width=72, height=72)
with open(target, "wb") as handle:
    writer.write(handle)
"""


@pytest.mark.skipif(os.name == "nt", reason="uses a shebang script as the engine")
def test_real_processes_collect_in_submission_order(tmp_path):
    engine = tmp_path / "fake_engine"
    engine.write_text(f"#!{sys.executable}\n{ENGINE_SCRIPT}", encoding="utf-8")
    engine.chmod(engine.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    inputs = []
    for name in ("slow.docx", "bad.xlsx", "fast.pptx"):
        path = tmp_path / name
        path.write_bytes(b"placeholder")
        inputs.append(str(path))

    source_map = {}
    converter = OfficeConverter(str(engine), scratch_dir=str(tmp_path / "scratch"))
    converted = converter.convert_files(inputs, source_file_map=source_map)

    assert [Path(source_map[path]).name for path in converted] == ["slow.docx", "fast.pptx"]
    assert all(Path(path).exists() for path in converted)


def test_missing_engine_executable_raises_launch_error(tmp_path):
    converter = OfficeConverter(str(tmp_path / "missing" / "OfficeToPDF.exe"), scratch_dir=str(tmp_path))

    with pytest.raises(EngineLaunchError):
        converter.convert_files(["a.docx"])
