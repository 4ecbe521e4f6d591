"""
PDF Manipulator - GUI Application
Combines PDFs and office documents into a single PDF
"""

import tkinter as tk
from tkinter import ttk, filedialog, messagebox
import os
import sys
from pathlib import Path
from typing import Iterable, List

from engine_setup import EngineSetupError, install_engine, logs_dir
from pipeline_engine import OfficeConverter
from task_coordinator import BackgroundTaskCoordinator

_LOG_MAX_LINES = 5000
_LOG_TRIM_LINES = 1000


def normalize_output_path(path: str) -> str:
    """Ensure the chosen output file ends in .pdf."""
    path = (path or "").strip()
    if path and not path.lower().endswith(".pdf"):
        path += ".pdf"
    return path


def add_unique_paths(existing: List[str], selected: Iterable[str]) -> List[str]:
    """Return the paths from ``selected`` not already in ``existing``, in selection order."""
    seen = set(os.path.normcase(os.path.abspath(p)) for p in existing)
    added = []
    for path in selected:
        key = os.path.normcase(os.path.abspath(path))
        if key in seen:
            continue
        seen.add(key)
        added.append(path)
    return added


def document_type_label(path: str) -> str:
    extension = Path(path).suffix.lstrip(".")
    return extension.upper() if extension else "PDF"


def default_documents_folder() -> str:
    user_profile = os.environ.get("USERPROFILE")
    if user_profile:
        documents = Path(user_profile) / "Documents"
    else:
        documents = Path.home() / "Documents"
    return str(documents) if documents.is_dir() else str(Path.home())


class PdfManipulatorGUI:
    def __init__(self, root, converter: OfficeConverter, run_logs_dir: str = None):
        self.root = root
        self.root.title("PDF Manipulator")
        self.root.geometry("960x600")
        self.root.resizable(True, True)

        # Variables
        self.output_file = tk.StringVar()
        self.files: List[str] = []
        self.initial_dir = default_documents_folder()

        self.coordinator = BackgroundTaskCoordinator(
            converter,
            ui=self,
            schedule=self._schedule_on_ui,
            logs_dir=run_logs_dir,
            event_callback=self.on_run_event,
        )

        # Build UI
        self.create_widgets()

        # Safe window close handler
        self.root.protocol("WM_DELETE_WINDOW", self._on_window_close)

    def create_widgets(self):
        """Create all UI widgets"""
        content_frame = tk.Frame(self.root, padx=12, pady=12)
        content_frame.pack(fill=tk.BOTH, expand=True)
        content_frame.grid_columnconfigure(2, weight=1)
        content_frame.grid_rowconfigure(0, weight=3)
        content_frame.grid_rowconfigure(4, weight=1)

        # File list
        list_frame = tk.Frame(content_frame)
        list_frame.grid(row=0, column=0, columnspan=4, sticky='nsew', pady=(0, 10))
        list_frame.grid_columnconfigure(0, weight=1)
        list_frame.grid_rowconfigure(0, weight=1)

        self.file_list = ttk.Treeview(list_frame, columns=("name", "type"), show='headings', selectmode='extended')
        self.file_list.heading("name", text="File name")
        self.file_list.heading("type", text="Document type")
        self.file_list.column("name", width=700, anchor='w')
        self.file_list.column("type", width=120, anchor='w')
        self.file_list.grid(row=0, column=0, sticky='nsew')
        self.file_list.bind("<Delete>", lambda _event: self.remove_selected())
        list_scroll = ttk.Scrollbar(list_frame, orient='vertical', command=self.file_list.yview)
        list_scroll.grid(row=0, column=1, sticky='ns')
        self.file_list.configure(yscrollcommand=list_scroll.set)

        # Controls
        self.add_file_btn = tk.Button(content_frame, text="Add Files", command=self.add_files, width=12)
        self.add_file_btn.grid(row=1, column=0, sticky='w', padx=(0, 6))

        self.remove_file_btn = tk.Button(content_frame, text="Remove", command=self.remove_selected, width=10)
        self.remove_file_btn.grid(row=1, column=1, sticky='w', padx=(0, 6))

        output_frame = tk.Frame(content_frame)
        output_frame.grid(row=1, column=2, sticky='ew', padx=(0, 6))
        output_frame.grid_columnconfigure(1, weight=1)
        self.set_output_btn = tk.Button(output_frame, text="Select Output", command=self.set_output_file, width=12)
        self.set_output_btn.grid(row=0, column=0, sticky='w', padx=(0, 6))
        tk.Entry(output_frame, textvariable=self.output_file, state='readonly').grid(row=0, column=1, sticky='ew')

        self.process_files_btn = tk.Button(
            content_frame,
            text="Process Files",
            command=self.process_files,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 10, 'bold'),
            width=14,
        )
        self.process_files_btn.grid(row=1, column=3, sticky='e')

        # Progress bar
        self.progress = ttk.Progressbar(content_frame, mode='indeterminate')
        self.progress.grid(row=2, column=0, columnspan=4, sticky='ew', pady=(10, 10))

        tk.Label(content_frame, text="Run Log:", font=('Arial', 10, 'bold')).grid(
            row=3, column=0, columnspan=4, sticky='w', pady=(0, 4)
        )
        log_frame = tk.Frame(content_frame)
        log_frame.grid(row=4, column=0, columnspan=4, sticky='nsew')
        log_frame.grid_columnconfigure(0, weight=1)
        log_frame.grid_rowconfigure(0, weight=1)
        self.log_text = tk.Text(log_frame, height=8, wrap='word', state='disabled')
        self.log_text.grid(row=0, column=0, sticky='nsew')
        log_scroll = ttk.Scrollbar(log_frame, orient='vertical', command=self.log_text.yview)
        log_scroll.grid(row=0, column=1, sticky='ns')
        self.log_text.configure(yscrollcommand=log_scroll.set)

    # UI port used by BackgroundTaskCoordinator

    def set_controls_enabled(self, enabled: bool):
        state = 'normal' if enabled else 'disabled'
        for button in (self.add_file_btn, self.remove_file_btn, self.set_output_btn, self.process_files_btn):
            button.config(state=state)
        self.process_files_btn.config(text='Process Files' if enabled else 'Processing...')

    def set_progress_indeterminate(self, running: bool):
        if running:
            self.progress.start(30)
        else:
            self.progress.stop()

    def show_error(self, title: str, message: str):
        self._append_log(f"[ERROR] {title}: {message}")
        messagebox.showerror(title, message, parent=self.root)

    def show_info(self, title: str, message: str):
        self._append_log(f"[INFO] {title}")
        messagebox.showinfo(title, message, parent=self.root)

    def _schedule_on_ui(self, callback):
        self.root.after(0, callback)

    # Triggers

    def add_files(self):
        """Open file browser and append the selected documents"""
        selected = filedialog.askopenfilenames(
            title="Select Files",
            initialdir=self.initial_dir,
            filetypes=[("Any Document", "*.*")],
        )
        for path in add_unique_paths(self.files, selected):
            self.files.append(path)
            self.file_list.insert('', tk.END, values=(Path(path).name, document_type_label(path)))

    def remove_selected(self):
        if self.coordinator.is_running:
            return
        rows = self.file_list.get_children()
        # Delete from the bottom so earlier indices stay valid.
        for item in sorted(self.file_list.selection(), key=rows.index, reverse=True):
            del self.files[rows.index(item)]
            self.file_list.delete(item)

    def set_output_file(self):
        """Open save dialog for the merged output file"""
        output = filedialog.asksaveasfilename(
            title="Select Output File",
            initialdir=self.initial_dir,
            defaultextension=".pdf",
            filetypes=[("Pdf Documents", "*.pdf")],
        )
        if output:
            self.output_file.set(normalize_output_path(output))

    def process_files(self):
        """Start merging the listed files"""
        if self.coordinator.start(list(self.files), self.output_file.get()):
            self._append_log(f"Run started ({len(self.files)} files).")

    # Live log

    def on_run_event(self, payload):
        try:
            self.root.after(0, self._handle_run_event, payload)
        except (RuntimeError, tk.TclError):
            pass  # Window may have been destroyed

    def _handle_run_event(self, payload):
        level = str(payload.get("level", "INFO")).upper()
        event = str(payload.get("event", "event"))
        message = str(payload.get("message", ""))
        source = (payload.get("context") or {}).get("file")
        suffix = f" ({source})" if source else ""
        self._append_log(f"[{level}] {event}: {message}{suffix}")

    def _append_log(self, line):
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, line + "\n")
        # Trim oldest lines when the log gets too large.
        line_count = int(self.log_text.index('end-1c').split('.')[0])
        if line_count > _LOG_MAX_LINES:
            self.log_text.delete('1.0', f'{_LOG_TRIM_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')

    def _on_window_close(self):
        """Handle window close (X button). Confirm if a run is in progress."""
        if self.coordinator.is_running:
            if not messagebox.askyesno(
                "Processing in progress",
                "Files are still being processed and the run cannot be cancelled.\n\n"
                "Close anyway? The output file will not be written.",
            ):
                return
        self.root.destroy()


def main():
    """Main entry point"""
    root = tk.Tk()
    try:
        engine_path = install_engine()
    except EngineSetupError as exc:
        root.withdraw()
        messagebox.showerror("PDF Manipulator", f"Setup failed:\n\n{exc}")
        root.destroy()
        sys.exit(1)

    PdfManipulatorGUI(root, OfficeConverter(engine_path), run_logs_dir=str(logs_dir()))
    root.mainloop()


if __name__ == "__main__":
    main()
