"""
PDF Manipulator Pipeline Engine - Core conversion and merging logic
Classifies input documents, converts office documents to PDF with an external
engine process, and merges everything into a single ordered PDF.
"""

import atexit
import os
import json
import shutil
import subprocess
import tempfile
import threading
import uuid
from datetime import datetime
from typing import List, Dict, Optional, Tuple, Set, Any, Callable, Sequence, NamedTuple

# Module-level tracking of scratch dirs for atexit cleanup if a run dies midway.
_active_temp_dirs: Set[str] = set()
_active_temp_dirs_lock = threading.Lock()


def _atexit_cleanup_temp_dirs():
    """Last-resort cleanup of scratch dirs when the process exits."""
    with _active_temp_dirs_lock:
        for d in list(_active_temp_dirs):
            shutil.rmtree(d, ignore_errors=True)
        _active_temp_dirs.clear()


atexit.register(_atexit_cleanup_temp_dirs)

# PDF handling
try:
    from pypdf import PdfReader, PdfWriter
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False

# Image handling (for images saved with a .pdf extension)
try:
    from PIL import Image
    import io
    HAS_PIL = True
except ImportError:
    HAS_PIL = False


PDF_EXTENSION = ".pdf"
PDF_SIGNATURE = b"%PDF-"

FINAL_FORMAT = "final_format"
CONVERTIBLE = "convertible"

# Windows process creation flag; hides the console window of the engine.
CREATE_NO_WINDOW = 0x08000000


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class ValidationError(PipelineError):
    """Raised when a run request is rejected before it starts."""

    def __init__(self, title: str, message: str):
        super().__init__(message)
        self.title = title
        self.message = message


class EngineLaunchError(PipelineError):
    """Raised when the conversion engine process cannot be spawned."""


class MergeError(PipelineError):
    """Raised when the merged output cannot be produced."""


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _make_writable_temp_dir(prefix: str, base_dir: Optional[str] = None) -> str:
    """
    Create a writable scratch directory.
    Some Windows/Python builds can produce temp dirs that are not writable when
    created with tempfile.mkdtemp(mode=0o700 semantics).
    """
    base_candidates = [base_dir] if base_dir else [tempfile.gettempdir(), os.getcwd()]

    for candidate_base in base_candidates:
        if not candidate_base:
            continue
        try:
            os.makedirs(candidate_base, exist_ok=True)
        except OSError:
            continue

        for _ in range(8):
            candidate = os.path.join(candidate_base, f"{prefix}{uuid.uuid4().hex}")
            try:
                os.makedirs(candidate, exist_ok=False)
                probe = os.path.join(candidate, ".write_probe")
                with open(probe, "wb") as handle:
                    handle.write(b"ok")
                os.remove(probe)
                with _active_temp_dirs_lock:
                    _active_temp_dirs.add(candidate)
                return candidate
            except OSError:
                shutil.rmtree(candidate, ignore_errors=True)

    raise RuntimeError("Unable to create a writable scratch directory.")


def _remove_temp_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)
    with _active_temp_dirs_lock:
        _active_temp_dirs.discard(path)


class RunLogger:
    """Persist run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: str,
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log")
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl")
        self._text_handle = None
        self._jsonl_handle = None
        self._lock = threading.Lock()

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    @staticmethod
    def new_run_id() -> str:
        return datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None:
                handle.close()
        self._text_handle = None
        self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in {"file", "source", "destination", "output", "path"}:
            return os.path.basename(value)
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        sanitized = {}
        for key, value in context.items():
            sanitized[key] = self._redact_value(key, value)
        return sanitized

    def log(self, level: str, event: str, message: str, **context) -> None:
        if not self.enabled or self._text_handle is None:
            return
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }

        text_context = ""
        if safe_context:
            context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
            text_context = " | " + ", ".join(context_parts)

        with self._lock:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
            self._jsonl_handle.flush()
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()

        if self.event_callback:
            self.event_callback(payload)


class Document(NamedTuple):
    """An input document and its classification."""

    path: str
    kind: str

    @property
    def needs_conversion(self) -> bool:
        return self.kind == CONVERTIBLE


def document_kind(path: str) -> str:
    """Return the kind of a path, based on its extension only."""
    extension = os.path.splitext(path)[1]
    if not extension or extension.lower() == PDF_EXTENSION:
        return FINAL_FORMAT
    return CONVERTIBLE


def classify_documents(paths: Sequence[str]) -> Tuple[List[Document], List[Document]]:
    """
    Split input paths into (retained, convertible) documents.

    The partition is stable: within each returned list, documents keep the
    relative order they had in ``paths``. The merged output order depends on it.
    Paths without an extension are retained; request validation has already
    checked that they hold PDF data.
    """
    retained: List[Document] = []
    convertible: List[Document] = []
    for path in paths:
        document = Document(path, document_kind(path))
        if document.needs_conversion:
            convertible.append(document)
        else:
            retained.append(document)
    return retained, convertible


def sequence_documents(retained: Sequence[Document], converted: Sequence[str]) -> List[str]:
    """Final merge order: retained documents first, then converted outputs."""
    return [document.path for document in retained] + list(converted)


def _looks_like_pdf(path: str) -> bool:
    try:
        with open(path, "rb") as handle:
            return handle.read(len(PDF_SIGNATURE)) == PDF_SIGNATURE
    except OSError:
        return False


class PipelineRequest:
    """One start request: the ordered documents and the merged output path."""

    def __init__(self, documents: Sequence[str], output_path: str):
        self.documents = list(documents or [])
        self.output_path = output_path or ""

    def validate(self) -> None:
        if not self.documents:
            raise ValidationError("Invalid input", "Please add files to process.")

        if not self.output_path.strip():
            raise ValidationError("Invalid output", "Please select an output file.")

        for path in self.documents:
            if not os.path.splitext(path)[1] and not _looks_like_pdf(path):
                raise ValidationError(
                    "Invalid input",
                    f"Cannot determine the document type of '{os.path.basename(path)}'. "
                    "Files without an extension must already be PDF documents.",
                )


class ConversionJob:
    """One running engine process and the scratch PDF it is expected to write."""

    def __init__(self, input_path: str, output_path: str, process):
        self.input_path = input_path
        self.output_path = output_path
        self.process = process

    def wait(self) -> bool:
        """Block until the engine exits. True when it exited with status 0."""
        return self.process.wait() == 0


def _no_window_kwargs() -> Dict[str, Any]:
    if os.name == 'nt':
        return {'creationflags': CREATE_NO_WINDOW}
    return {}


class OfficeConverter:
    """Converts office documents to PDF by running the external engine executable."""

    def __init__(
        self,
        executable_path: str,
        scratch_dir: Optional[str] = None,
        max_concurrent: Optional[int] = None,
        warnings: Optional[List[Dict]] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        if max_concurrent is not None and int(max_concurrent) < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.executable_path = str(executable_path)
        self.scratch_dir = scratch_dir or tempfile.gettempdir()
        self.max_concurrent = int(max_concurrent) if max_concurrent is not None else None
        self.warnings = warnings
        self.run_logger = run_logger

    def _log(self, level: str, event: str, message: str, **context) -> None:
        if self.run_logger:
            self.run_logger.log(level, event, message, **context)

    def scratch_output_path(self) -> str:
        return os.path.join(self.scratch_dir, uuid.uuid4().hex + ".pdf")

    def launch(self, input_path: str) -> ConversionJob:
        """Start one engine process for ``input_path``. Raises EngineLaunchError."""
        output_path = self.scratch_output_path()
        command = [self.executable_path, input_path, output_path]
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **_no_window_kwargs(),
            )
        except OSError as exc:
            self._log(
                "error",
                "engine_launch_failed",
                "Could not start the conversion engine",
                file=input_path,
                error=str(exc),
            )
            raise EngineLaunchError(
                f"Couldn't run the conversion engine '{self.executable_path}': {exc}"
            ) from exc

        self._log("info", "conversion_launched", "Conversion started", file=input_path, output=output_path)
        return ConversionJob(input_path, output_path, process)

    def _collect(
        self,
        job: ConversionJob,
        converted: List[str],
        source_file_map: Optional[Dict[str, str]],
    ) -> None:
        if job.wait():
            converted.append(job.output_path)
            if source_file_map is not None:
                source_file_map[job.output_path] = job.input_path
            self._log("info", "conversion_succeeded", "Conversion finished", file=job.input_path)
        else:
            _record_warning(
                self.warnings,
                'conversion_failed',
                'Office-to-PDF conversion failed; skipping file',
                file=job.input_path,
                returncode=job.process.returncode,
            )
            self._log(
                "warning",
                "conversion_failed",
                "Conversion engine exited with an error; skipping file",
                file=job.input_path,
                returncode=job.process.returncode,
            )

    def convert_files(
        self,
        documents: Sequence[Any],
        source_file_map: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """
        Convert documents to PDF and return the generated paths of the successes.

        Every engine process is launched before any is waited on, unless
        ``max_concurrent`` caps the number of live processes. Results are always
        collected in submission order, so the returned list follows the input
        order with failed conversions left out.

        Args:
            documents: Document objects or plain paths, in submission order
            source_file_map: Optional dict filled with generated path -> input path
        """
        paths = [getattr(document, "path", document) for document in documents]
        os.makedirs(self.scratch_dir, exist_ok=True)

        limit = self.max_concurrent or max(1, len(paths))
        pending: List[ConversionJob] = []
        converted: List[str] = []

        try:
            for path in paths:
                if len(pending) >= limit:
                    self._collect(pending.pop(0), converted, source_file_map)
                pending.append(self.launch(path))
        except EngineLaunchError:
            # Reap whatever is already running before giving up on the run.
            for job in pending:
                job.process.wait()
            raise

        while pending:
            self._collect(pending.pop(0), converted, source_file_map)

        return converted


class PDFMerger:
    """Merges an ordered list of PDF files into one output file"""

    def merge(
        self,
        pdf_files: Sequence[str],
        destination_path: str,
        warnings: Optional[List[Dict]] = None,
        bookmark_titles: Optional[Dict[str, str]] = None,
        optional_files: Optional[Set[str]] = None,
    ) -> int:
        """
        Merge PDF files in the given order, overwriting destination_path.

        Args:
            pdf_files: Ordered list of PDF file paths
            destination_path: Output file
            bookmark_titles: Optional outline title per source path
            optional_files: Paths that may be skipped with a warning when they
                cannot be read; any other unreadable file raises MergeError

        Returns:
            Number of pages written
        """
        if not HAS_PYPDF:
            raise ImportError("pypdf library is required for PDF merging")

        optional_files = optional_files or set()
        writer = PdfWriter()
        total_pages_added = 0

        for pdf_file in pdf_files:
            page_start = total_pages_added
            file_warnings: List[Dict] = []
            pages_added = self._append_file(writer, pdf_file, file_warnings)
            if pages_added is None:
                if pdf_file not in optional_files:
                    raise MergeError(
                        f"Could not merge '{os.path.basename(pdf_file)}': {file_warnings[0]['message']}"
                    )
                pages_added = 0
            if warnings is not None:
                warnings.extend(file_warnings)
            total_pages_added += pages_added
            if pages_added and bookmark_titles and bookmark_titles.get(pdf_file):
                writer.add_outline_item(bookmark_titles[pdf_file], page_start)

        if total_pages_added == 0:
            raise MergeError("None of the selected documents produced readable PDF pages.")

        try:
            parent = os.path.dirname(os.path.abspath(destination_path))
            os.makedirs(parent, exist_ok=True)
            with open(destination_path, 'wb') as f:
                writer.write(f)
        except OSError as exc:
            raise MergeError(f"Could not write merged PDF to '{destination_path}': {exc}") from exc

        print(f"    Created: {os.path.basename(destination_path)} ({len(pdf_files)} PDFs, {total_pages_added} pages)")
        return total_pages_added

    def _append_file(self, writer, pdf_file: str, warnings: Optional[List[Dict]]) -> Optional[int]:
        """Append the pages of one file. Returns None when the file cannot be read at all."""
        try:
            reader = PdfReader(pdf_file)
            if reader.is_encrypted:
                # Empty password covers "view-only" PDFs
                if not reader.decrypt(""):
                    _record_warning(
                        warnings,
                        'pdf_encrypted',
                        'PDF is password-protected and cannot be merged; skipping',
                        file=pdf_file,
                    )
                    return None
            pages_added = 0
            for page in reader.pages:
                writer.add_page(page)
                pages_added += 1
            if pages_added == 0:
                _record_warning(warnings, 'pdf_no_pages', 'PDF contained zero readable pages', file=pdf_file)
            return pages_added
        except Exception as e:
            # The file may be an image with a .pdf extension
            pdf_bytes = self._try_convert_image_to_pdf(pdf_file)
            if not pdf_bytes:
                _record_warning(
                    warnings,
                    'pdf_unreadable',
                    'Could not read PDF file and image fallback failed',
                    file=pdf_file,
                    error=str(e),
                )
                print(f"Warning: Could not merge {pdf_file}: {e}")
                return None

        reader = PdfReader(io.BytesIO(pdf_bytes))
        pages_added = 0
        for page in reader.pages:
            writer.add_page(page)
            pages_added += 1
        return pages_added

    def _try_convert_image_to_pdf(self, file_path: str) -> Optional[bytes]:
        """
        Attempt to open a file as an image and convert it to PDF bytes.
        Returns PDF bytes on success, or None if the file is not a valid image.
        """
        if not HAS_PIL:
            return None
        try:
            img = Image.open(file_path)
            # Convert to RGB so it can be saved as PDF (handles RGBA, P, etc.)
            if img.mode not in ('RGB', 'L'):
                img = img.convert('RGB')
            pdf_bytes = io.BytesIO()
            img.save(pdf_bytes, format='PDF', resolution=150)
            print(f"    Converted image to PDF: {os.path.basename(file_path)}")
            return pdf_bytes.getvalue()
        except Exception:
            return None


def run_pipeline(
    converter: OfficeConverter,
    request: PipelineRequest,
    run_logger: Optional[RunLogger] = None,
    merger: Optional[PDFMerger] = None,
) -> Dict:
    """
    Classify, convert, sequence and merge the documents of one request.

    Runs on the worker thread. The converter's scratch output for this run
    lives in a private directory that is removed once the merge is done.

    Returns:
        Dict with run statistics
    """
    merger = merger or PDFMerger()
    warnings: List[Dict] = []

    retained, convertible = classify_documents(request.documents)
    print(f"\nProcessing {len(request.documents)} files "
          f"({len(retained)} PDF, {len(convertible)} to convert)")
    if run_logger:
        run_logger.log(
            "info",
            "run_started",
            "Run started",
            retained=len(retained),
            convertible=len(convertible),
            output=request.output_path,
        )

    base_scratch = converter.scratch_dir
    run_scratch = _make_writable_temp_dir(prefix="pdfm_convert_", base_dir=base_scratch)
    converter.scratch_dir = run_scratch
    converter.warnings = warnings
    converter.run_logger = run_logger
    try:
        source_file_map: Dict[str, str] = {}
        converted = converter.convert_files(convertible, source_file_map=source_file_map)

        # Converted outputs are bookmarked with the name of the document they came from.
        bookmark_titles = {document.path: os.path.basename(document.path) for document in retained}
        for output_path, source_path in source_file_map.items():
            bookmark_titles[output_path] = os.path.basename(source_path)

        merge_input = sequence_documents(retained, converted)
        merge_warnings: List[Dict] = []
        # A retained PDF the user chose must merge; an engine output that turns
        # out unreadable is dropped the same way a failed conversion is.
        pages = merger.merge(
            merge_input,
            request.output_path,
            warnings=merge_warnings,
            bookmark_titles=bookmark_titles,
            optional_files=set(converted),
        )
        warnings.extend(merge_warnings)

        skipped_outputs = {
            warning['file'] for warning in merge_warnings
            if warning['code'] in ('pdf_unreadable', 'pdf_encrypted')
        }
        merged_files = [path for path in merge_input if path not in skipped_outputs]
        for warning in merge_warnings:
            source = source_file_map.get(warning['file'], warning['file'])
            if run_logger:
                run_logger.log("warning", warning['code'], warning['message'], file=source)

        merged_conversions = [path for path in converted if path not in skipped_outputs]
        summary = {
            'attempted': len(convertible),
            'converted': len(merged_conversions),
            'failed': len(convertible) - len(merged_conversions),
        }
        merged_sources = set(document.path for document in retained)
        merged_sources.update(source_file_map[path] for path in merged_conversions)
        skipped = [document.path for document in convertible if document.path not in merged_sources]
        print(f"    Conversion summary: attempted={summary['attempted']}, "
              f"converted={summary['converted']}, failed={summary['failed']}")
        if run_logger:
            run_logger.log(
                "info",
                "merge_completed",
                "Merged PDF written",
                output=request.output_path,
                pages=pages,
                documents=len(merged_files),
            )

        return {
            'output_path': request.output_path,
            'merged_files': merged_files,
            'retained': [document.path for document in retained],
            'conversion': summary,
            'skipped': skipped,
            'pages': pages,
            'warnings': warnings,
        }
    finally:
        converter.scratch_dir = base_scratch
        converter.warnings = None
        converter.run_logger = None
        _remove_temp_dir(run_scratch)
