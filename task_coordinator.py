"""
Background Task Coordinator - single-flight run state machine
Moves the office converter into a worker thread for the length of one run and
hands it back to the UI thread when the run completes.
"""

import os
import queue
import threading
import traceback
from typing import Any, Callable, Dict, Optional, Sequence

from pipeline_engine import (
    PipelineRequest,
    RunLogger,
    ValidationError,
    run_pipeline,
)

IDLE = "idle"
RUNNING = "running"
TRANSFERRING = "transferring"


class _Idle:
    name = IDLE

    def __init__(self, converter):
        self.converter = converter


class _Running:
    name = RUNNING

    def __init__(self, worker: threading.Thread, channel: "queue.Queue"):
        self.worker = worker
        self.channel = channel


class _Transferring:
    name = TRANSFERRING


_TRANSFERRING = _Transferring()


class BackgroundTaskCoordinator:
    """
    Owns the run state: Idle(converter), Running(worker) or Transferring.

    The converter has exactly one owner at a time. While idle it sits in the
    Idle state; during a run it belongs to the worker thread, which hands it
    back through a one-slot channel. Transferring only exists inside the
    state lock, so callers never observe it.

    Args:
        converter: The OfficeConverter used for every run
        ui: Object exposing set_controls_enabled, set_progress_indeterminate,
            show_error and show_info
        schedule: Callable that runs a zero-argument callable later on the UI
            thread (``lambda fn: root.after(0, fn)`` for tkinter)
        pipeline: Callable(converter, request, run_logger) -> result dict
        logs_dir: Directory for per-run logs; None disables run logs
    """

    def __init__(
        self,
        converter,
        ui,
        schedule: Callable[[Callable[[], None]], Any],
        pipeline: Callable[..., Dict] = run_pipeline,
        logs_dir: Optional[str] = None,
        log_privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.ui = ui
        self.schedule = schedule
        self.pipeline = pipeline
        self.logs_dir = logs_dir
        self.log_privacy_mode = log_privacy_mode
        self.event_callback = event_callback
        self._state = _Idle(converter)
        self._lock = threading.Lock()

    @property
    def state_name(self) -> str:
        with self._lock:
            return self._state.name

    @property
    def is_running(self) -> bool:
        return self.state_name == RUNNING

    def start(self, documents: Sequence[str], output_path: str) -> bool:
        """
        Begin a run. Returns True when the run was accepted.

        Invalid requests are reported through ui.show_error and leave the
        coordinator idle. A start while a run is active is ignored.
        """
        request = PipelineRequest(documents, output_path)

        with self._lock:
            if not isinstance(self._state, _Idle):
                return False

            try:
                request.validate()
            except ValidationError as exc:
                validation_error = exc
            else:
                validation_error = None
                converter = self._state.converter
                self._state = _TRANSFERRING
                channel: "queue.Queue" = queue.Queue(maxsize=1)
                worker = threading.Thread(
                    target=self._run_worker,
                    args=(converter, request, channel),
                    name="pdf-pipeline-worker",
                    daemon=True,
                )
                self._state = _Running(worker, channel)

        if validation_error is not None:
            self.ui.show_error(validation_error.title, validation_error.message)
            return False

        self.ui.set_controls_enabled(False)
        self.ui.set_progress_indeterminate(True)
        try:
            worker.start()
        except RuntimeError as exc:
            # The thread never ran, so the converter never left this thread.
            with self._lock:
                self._state = _Idle(converter)
            self.ui.set_progress_indeterminate(False)
            self.ui.set_controls_enabled(True)
            self.ui.show_error("Processing failed", f"Could not start the processing thread:\n\n{exc}")
            return False
        return True

    def _open_run_logger(self) -> Optional[RunLogger]:
        if not self.logs_dir:
            return None
        return RunLogger(
            logs_dir=self.logs_dir,
            run_id=RunLogger.new_run_id(),
            privacy_mode=self.log_privacy_mode,
            event_callback=self.event_callback,
        )

    def _run_worker(self, converter, request: PipelineRequest, channel: "queue.Queue") -> None:
        """Run the pipeline (worker thread), then return the converter and signal the UI."""
        outcome: Dict[str, Any] = {'ok': False, 'error': RuntimeError("Worker stopped unexpectedly")}
        run_logger = None
        try:
            run_logger = self._open_run_logger()
            result = self.pipeline(converter, request, run_logger)
            outcome = {'ok': True, 'result': result}
            if run_logger:
                run_logger.log("info", "run_completed", "Run completed", output=request.output_path)
        except Exception as exc:
            traceback.print_exc()
            outcome = {'ok': False, 'error': exc}
            if run_logger:
                run_logger.log("error", "run_failed", str(exc), error_type=type(exc).__name__)
        except BaseException as exc:
            outcome = {'ok': False, 'error': exc}
            raise
        finally:
            try:
                if run_logger:
                    run_logger.close()
            finally:
                # The converter goes back and the UI is signalled on every exit path.
                channel.put((converter, outcome))
                self.schedule(self._on_worker_finished)

    def _on_worker_finished(self) -> None:
        """Completion handler; runs on the UI thread."""
        with self._lock:
            running = self._state
            if not isinstance(running, _Running):
                return
            self._state = _TRANSFERRING
            running.worker.join()
            converter, outcome = running.channel.get_nowait()
            self._state = _Idle(converter)

        self.ui.set_progress_indeterminate(False)
        self.ui.set_controls_enabled(True)

        if outcome['ok']:
            result = outcome['result'] or {}
            self.ui.show_info("Processing complete!", _success_message(result))
        else:
            error = outcome['error']
            message = str(error) or type(error).__name__
            # Truncate very long error messages for the dialog.
            if len(message) > 1000:
                message = message[:1000] + "\n\n... (truncated, see run log for full error)"
            self.ui.show_error("Processing failed", f"An error occurred while processing files:\n\n{message}")


def _success_message(result: Dict) -> str:
    conversion = result.get('conversion', {})
    lines = ["Successfully processed files."]
    if result.get('output_path'):
        lines.append(f"\nOutput:\n{result['output_path']}")
    if conversion.get('failed'):
        lines.append(
            f"\n{conversion['failed']} of {conversion['attempted']} documents "
            "could not be converted and were left out."
        )
    skipped = result.get('skipped') or []
    if skipped:
        lines.append("\nLeft out of the merged PDF:")
        lines.extend(f"  - {os.path.basename(path)}" for path in skipped)
    return "\n".join(lines)
