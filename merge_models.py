"""
Merge models - shared data types, limits and run logging
Used by the planner, the document engine adapters and the merge executor
"""

import atexit
import json
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

MIB = 1024 * 1024

# Chunking and fast-path budgets.
SPLIT_TRIGGER_BYTES = 500 * MIB
MAX_INPUTS_PER_MERGE_CALL = 24
DIRECT_ARG_CHAR_LIMIT = 26000
FAST_FREE_MEMORY_RATIO = 0.22
FAST_TOTAL_MEMORY_RATIO = 0.08
MIN_FAST_MEMORY_BYTES = 384 * MIB
MAX_FAST_MEMORY_BYTES = 1200 * MIB

KIND_PDF = "pdf"
KIND_DECK = "pptx"
KIND_LEGACY_DECK = "ppt"
KIND_IMAGE = "image"
CONVERTIBLE_KINDS = frozenset({KIND_DECK, KIND_LEGACY_DECK, KIND_IMAGE})
# Kind names sent by the presentation layer.
PAYLOAD_KINDS = {
    "paginated-doc": KIND_PDF,
    "deck": KIND_DECK,
    "legacy-deck": KIND_LEGACY_DECK,
    "image": KIND_IMAGE,
}
DECK_KINDS = frozenset({KIND_DECK, KIND_LEGACY_DECK})
IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp', '.gif', '.webp', '.tif', '.tiff')

ROUTE_DOCUMENTS = "uniform-documents"
ROUTE_CONVERTIBLE = "uniform-convertible"
ROUTE_MIXED = "mixed"

MODE_FAST = "fast"
MODE_SAFE = "safe"
MODE_READY = "ready"
MODE_UNSUPPORTED = "unsupported"
MODE_NONE = "none"

FORMAT_PDF = "pdf"
FORMAT_PPTX = "pptx"
OUTPUT_FORMATS = (FORMAT_PDF, FORMAT_PPTX)

PHASE_MERGING = "merging"
PHASE_WRITING = "writing"
PHASE_DONE = "done"
PHASE_CANCELED = "canceled"

# Module-level tracking of job workspaces for atexit cleanup if the process exits mid-job.
_active_temp_dirs: Set[str] = set()
_active_temp_dirs_lock = threading.Lock()


def _atexit_cleanup_temp_dirs():
    """Last-resort cleanup of job workspaces when the process exits."""
    with _active_temp_dirs_lock:
        for d in list(_active_temp_dirs):
            shutil.rmtree(d, ignore_errors=True)
        _active_temp_dirs.clear()


atexit.register(_atexit_cleanup_temp_dirs)


class MergeError(RuntimeError):
    """Base class for merge failures surfaced to the caller."""


class UnsupportedInputError(MergeError):
    """The request was rejected before a job started."""


class MergeBusyError(MergeError):
    """Another merge job is already active in this process."""


class EngineUnavailableError(MergeError):
    """The document engine or an office converter is missing and cannot be provisioned."""


class NoOutputError(MergeError):
    """Accumulation finished without producing an artifact."""


class ToolInvocationError(MergeError):
    """An external tool exited with a non-success status."""

    def __init__(self, message: str, command: str = "", returncode: Optional[int] = None,
                 stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ConversionError(ToolInvocationError):
    """A conversion adapter could not produce its output."""


class MergeCancelled(Exception):
    """Raised at a step boundary once cancellation has been requested."""

    def __init__(self, message: str = "Merge canceled by user."):
        super().__init__(message)


def detect_kind(path: str) -> str:
    """Map a file name to an input kind, or '' when the extension is not supported."""
    lowered = str(path or "").lower()
    if lowered.endswith('.pdf'):
        return KIND_PDF
    if lowered.endswith('.pptx'):
        return KIND_DECK
    if lowered.endswith('.ppt'):
        return KIND_LEGACY_DECK
    if lowered.endswith(IMAGE_EXTENSIONS):
        return KIND_IMAGE
    return ""


def normalize_kind(kind, path: str) -> str:
    """Resolve a caller-supplied kind; names nobody knows fall back to the file extension."""
    lowered = str(kind or "").strip().lower()
    if lowered in PAYLOAD_KINDS:
        return PAYLOAD_KINDS[lowered]
    if lowered == KIND_PDF or lowered in CONVERTIBLE_KINDS:
        return lowered
    return detect_kind(path)


@dataclass(frozen=True)
class InputFile:
    path: str
    name: str
    size: int
    kind: str
    created_ms: Optional[float] = None
    modified_ms: Optional[float] = None

    @property
    def title(self) -> str:
        return os.path.splitext(self.name)[0]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InputFile":
        """Build an InputFile from a presentation-layer record ({path, name, size, kind})."""
        path = str(payload.get("path") or "")
        name = str(payload.get("name") or os.path.basename(path))
        try:
            size = int(payload.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        kind = normalize_kind(payload.get("kind"), path or name)
        return cls(path=path, name=name, size=size, kind=kind)

    @classmethod
    def from_path(cls, path: str) -> "InputFile":
        stats = os.stat(path)
        name = os.path.basename(path)
        created = getattr(stats, "st_birthtime", None) or stats.st_ctime
        return cls(
            path=path,
            name=name,
            size=stats.st_size,
            kind=detect_kind(name),
            created_ms=created * 1000,
            modified_ms=stats.st_mtime * 1000,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "name": self.name, "size": self.size, "kind": self.kind}


def read_file_metadata(paths: List[str]) -> List[InputFile]:
    """Stat each path into an InputFile; unreadable paths are left out."""
    results = []
    for file_path in paths:
        try:
            results.append(InputFile.from_path(file_path))
        except OSError:
            continue
    return results


def coerce_input_files(files) -> List[InputFile]:
    """Accept InputFile objects, payload dicts or plain paths."""
    coerced = []
    for item in files or []:
        if isinstance(item, InputFile):
            coerced.append(item)
        elif isinstance(item, dict):
            coerced.append(InputFile.from_payload(item))
        else:
            path = os.fspath(item)
            try:
                coerced.append(InputFile.from_path(path))
            except OSError:
                coerced.append(InputFile(path=path, name=os.path.basename(path), size=0, kind=detect_kind(path)))
    return coerced


@dataclass(frozen=True)
class MergePlan:
    mode: str
    reason: str
    total_bytes: int
    memory_limit_bytes: int
    arg_chars: int
    arg_limit_chars: int
    route: Optional[str]
    unsupported_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "reason": self.reason,
            "totalBytes": self.total_bytes,
            "memoryLimitBytes": self.memory_limit_bytes,
            "argChars": self.arg_chars,
            "argLimitChars": self.arg_limit_chars,
            "route": self.route,
            "unsupported": self.unsupported_count,
        }


@dataclass(frozen=True)
class SplitSegment:
    source_path: str
    page_start: int
    page_end: int
    temp_path: str

    @property
    def page_range(self) -> str:
        return f"{self.page_start}-{self.page_end}"


@dataclass(frozen=True)
class BookmarkEntry:
    title: str
    start_page_index: int


@dataclass(frozen=True)
class MergeProgress:
    completed: int
    total: int
    percent: int
    label: str
    phase: str
    done: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "completed": self.completed,
            "total": self.total,
            "percent": self.percent,
            "etaSeconds": 0,
            "fileName": self.label,
            "phase": self.phase,
        }
        if self.done:
            payload["done"] = True
        return payload


@dataclass
class JobState:
    """Mutable per-job state shared by the executor and the cancel handler."""

    cancel_requested: bool = False
    completed_units: int = 0
    current_label: str = "Preparing merge engine..."
    active_process: Optional[Any] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def request_cancel(self) -> None:
        with self._lock:
            self.cancel_requested = True
            process = self.active_process
        if process is not None:
            process.terminate()

    def raise_if_cancelled(self) -> None:
        if self.cancel_requested:
            raise MergeCancelled()

    def attach_process(self, process) -> None:
        """Register the running child; a cancel that raced ahead of us kills it at once."""
        with self._lock:
            self.active_process = process
            cancelled = self.cancel_requested
        if cancelled:
            process.terminate()

    def detach_process(self, process) -> None:
        with self._lock:
            if self.active_process is process:
                self.active_process = None

    def terminate_active_process(self) -> None:
        with self._lock:
            process = self.active_process
        if process is not None:
            process.terminate()


@dataclass
class MergeJob:
    id: str
    files: List[InputFile]
    output_path: str
    requested_format: str
    route: str
    workspace_dir: str = ""
    state: JobState = field(default_factory=JobState)


def new_job_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _notify(callback, payload) -> None:
    """Hand payload to a caller callback; a failing callback never breaks the job."""
    if callback is None:
        return
    try:
        callback(payload)
    except Exception:
        pass


def create_job_workspace(job_id: str, temp_root: Optional[str] = None) -> str:
    """
    Create the private folder for one job's intermediates and register it for exit cleanup.

    Each candidate is checked with a test write: some Windows setups hand out
    temp folders that cannot be written to, and the next root is tried then.
    """
    roots = [temp_root] if temp_root else [tempfile.gettempdir(), os.getcwd()]
    for root in roots:
        try:
            os.makedirs(root, exist_ok=True)
        except OSError:
            continue
        for _ in range(8):
            workspace = os.path.join(root, f"merge_job_{job_id}_{uuid.uuid4().hex[:12]}")
            marker = os.path.join(workspace, ".writable")
            try:
                os.makedirs(workspace)
                with open(marker, "wb") as handle:
                    handle.write(b"ok")
                os.remove(marker)
            except OSError:
                shutil.rmtree(workspace, ignore_errors=True)
                continue
            with _active_temp_dirs_lock:
                _active_temp_dirs.add(workspace)
            return workspace
    raise MergeError(f"Unable to create a writable job workspace under {', '.join(roots)}.")


def cleanup_workspace(workspace: Optional[str]) -> None:
    """Remove a job workspace recursively. Safe to call more than once."""
    if not workspace:
        return
    shutil.rmtree(workspace, ignore_errors=True)
    with _active_temp_dirs_lock:
        _active_temp_dirs.discard(workspace)


def is_inside(path: str, directory: str) -> bool:
    """True when path lives somewhere under directory."""
    if not path or not directory:
        return False
    path_abs = os.path.normcase(os.path.abspath(path))
    dir_abs = os.path.normcase(os.path.abspath(directory))
    try:
        return os.path.commonpath([path_abs, dir_abs]) == dir_abs
    except ValueError:
        return False


# Context keys that hold file system locations; redacted runs keep only base names.
PATH_CONTEXT_KEYS = frozenset({
    "file", "source", "destination", "output", "requested", "path", "accumulator", "workspace",
})


class RunLogger:
    """
    Per-job event log.

    Each event is appended to run_<id>.jsonl as one JSON object and to
    run_<id>.log as a readable line, then passed to event_callback. With
    privacy_mode "redacted", path-valued context is cut to the base name.
    """

    def __init__(
        self,
        logs_dir: str,
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.run_id = run_id
        self.privacy_mode = privacy_mode
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log")
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl")
        self._jsonl = None
        self._text = None
        if enabled:
            os.makedirs(logs_dir, exist_ok=True)
            self._jsonl = open(self.jsonl_log_path, "a", encoding="utf-8")
            self._text = open(self.text_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        streams = [s for s in (self._jsonl, self._text) if s is not None]
        self._jsonl = self._text = None
        for stream in streams:
            try:
                stream.close()
            except OSError:
                pass

    def _context(self, context: Dict[str, Any]) -> Dict[str, Any]:
        if self.privacy_mode != "redacted":
            return dict(context)
        return {
            key: os.path.basename(value) if isinstance(value, str) and key.lower() in PATH_CONTEXT_KEYS else value
            for key, value in context.items()
        }

    @staticmethod
    def _text_line(payload: Dict[str, Any]) -> str:
        line = f"[{payload['ts']}] {payload['level']} {payload['event']}: {payload['message']}"
        if payload["context"]:
            line += " | " + ", ".join(f"{key}={value}" for key, value in sorted(payload["context"].items()))
        return line

    def log(self, level: str, event: str, message: str, **context) -> None:
        payload = {
            "ts": datetime.now().isoformat(),
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": self._context(context),
        }
        if self._jsonl is not None:
            self._jsonl.write(json.dumps(payload, ensure_ascii=False) + "\n")
            self._jsonl.flush()
            self._text.write(self._text_line(payload) + "\n")
            self._text.flush()
        _notify(self.event_callback, payload)
