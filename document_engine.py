"""
Document engine - page count, page-range extraction and merge primitives
Backed by the qpdf command-line tool (default) or pypdf (in-process)
"""

import os
import re
import shutil
import subprocess
import threading
import zipfile
from typing import List, NamedTuple, Optional, Sequence

import psutil
import requests

from merge_models import EngineUnavailableError, JobState, MergeCancelled, ToolInvocationError

try:
    from pypdf import PdfReader, PdfWriter
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False

QPDF_VERSION = "12.3.2"
QPDF_FOLDER = f"qpdf-{QPDF_VERSION}-mingw64"
QPDF_DOWNLOAD_URL = f"https://github.com/qpdf/qpdf/releases/download/v{QPDF_VERSION}/{QPDF_FOLDER}.zip"
DEFAULT_TOOLS_ROOT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "tools")
# qpdf exits with 3 when it succeeded with warnings.
QPDF_SUCCESS_CODES = (0, 3)

_qpdf_setup_lock = threading.Lock()


class CompletedRun(NamedTuple):
    stdout: str
    stderr: str
    returncode: int


class ProcessHandle:
    """A running child process that can be killed together with its descendants."""

    def __init__(self, popen: subprocess.Popen):
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    def poll(self) -> Optional[int]:
        return self._popen.poll()

    def terminate(self) -> None:
        if self._popen.poll() is not None:
            return
        try:
            children = psutil.Process(self._popen.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            try:
                child.kill()
            except psutil.Error:
                pass
        try:
            if os.name == "nt":
                self._popen.kill()
            else:
                self._popen.terminate()
        except OSError:
            pass


def run_process(
    command: str,
    args: Sequence[str],
    state: Optional[JobState] = None,
    success_codes: Sequence[int] = (0,),
) -> CompletedRun:
    """Run an external tool to completion, exposing it on the job state so a cancel can kill it."""
    creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0) if os.name == "nt" else 0
    try:
        popen = subprocess.Popen(
            [command, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            creationflags=creationflags,
        )
    except OSError as exc:
        raise ToolInvocationError(
            f"Could not start {os.path.basename(command)}: {exc}",
            command=command,
        ) from exc

    handle = ProcessHandle(popen)
    if state is not None:
        state.attach_process(handle)
    try:
        stdout, stderr = popen.communicate()
    finally:
        if state is not None:
            state.detach_process(handle)

    code = popen.returncode
    if code not in success_codes:
        raise ToolInvocationError(
            stderr.strip() or stdout.strip() or f"{command} exited with code {code}",
            command=command,
            returncode=code,
            stdout=stdout,
            stderr=stderr,
        )
    return CompletedRun(stdout, stderr, code)


def build_merge_arguments(input_paths: Sequence[str], output_path: str) -> List[str]:
    """Literal qpdf argument list for concatenating input_paths into output_path."""
    return ['--empty', '--pages', *input_paths, '--', output_path]


class DocumentEngine:
    """Contract every document engine implements. Page numbers are 1-based and inclusive."""

    name = "abstract"

    def page_count(self, path: str, state: Optional[JobState] = None) -> int:
        raise NotImplementedError

    def extract_range(self, source_path: str, start_page: int, end_page: int, out_path: str,
                      state: Optional[JobState] = None) -> None:
        raise NotImplementedError

    def merge(self, ordered_paths: Sequence[str], out_path: str, state: Optional[JobState] = None) -> None:
        raise NotImplementedError


class QpdfEngine(DocumentEngine):
    name = "qpdf"

    def __init__(self, qpdf_path: str):
        self.qpdf_path = qpdf_path

    def page_count(self, path: str, state: Optional[JobState] = None) -> int:
        result = run_process(self.qpdf_path, ['--show-npages', path], state, success_codes=QPDF_SUCCESS_CODES)
        try:
            parsed = int(str(result.stdout).strip())
        except ValueError:
            parsed = 0
        if parsed <= 0:
            raise ToolInvocationError(
                f"Unable to determine page count for {os.path.basename(path)}.",
                command=self.qpdf_path,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return parsed

    def extract_range(self, source_path: str, start_page: int, end_page: int, out_path: str,
                      state: Optional[JobState] = None) -> None:
        run_process(
            self.qpdf_path,
            ['--empty', '--pages', source_path, f"{start_page}-{end_page}", '--', out_path],
            state,
            success_codes=QPDF_SUCCESS_CODES,
        )

    def merge(self, ordered_paths: Sequence[str], out_path: str, state: Optional[JobState] = None) -> None:
        if not ordered_paths:
            raise ToolInvocationError("No input files for qpdf merge.", command=self.qpdf_path)
        run_process(
            self.qpdf_path,
            build_merge_arguments(ordered_paths, out_path),
            state,
            success_codes=QPDF_SUCCESS_CODES,
        )


class PypdfEngine(DocumentEngine):
    """In-process engine; slower and memory hungry, but needs no external binary."""

    name = "pypdf"

    def __init__(self):
        if not HAS_PYPDF:
            raise EngineUnavailableError("pypdf library is required for the in-process document engine")

    @staticmethod
    def _open_reader(path: str) -> "PdfReader":
        reader = PdfReader(path)
        if reader.is_encrypted:
            # Try to decrypt with empty password (handles "view-only" PDFs)
            if not reader.decrypt(""):
                raise ToolInvocationError(
                    f"{os.path.basename(path)} is password-protected and cannot be merged.",
                    command="pypdf",
                )
        return reader

    @staticmethod
    def _write(writer: "PdfWriter", out_path: str) -> None:
        with open(out_path, 'wb') as handle:
            writer.write(handle)

    def page_count(self, path: str, state: Optional[JobState] = None) -> int:
        try:
            count = len(self._open_reader(path).pages)
        except ToolInvocationError:
            raise
        except Exception as exc:
            raise ToolInvocationError(f"Could not read {os.path.basename(path)}: {exc}", command="pypdf") from exc
        if count <= 0:
            raise ToolInvocationError(
                f"Unable to determine page count for {os.path.basename(path)}.",
                command="pypdf",
            )
        return count

    def extract_range(self, source_path: str, start_page: int, end_page: int, out_path: str,
                      state: Optional[JobState] = None) -> None:
        try:
            reader = self._open_reader(source_path)
            writer = PdfWriter()
            for index in range(start_page - 1, end_page):
                writer.add_page(reader.pages[index])
            self._write(writer, out_path)
        except ToolInvocationError:
            raise
        except Exception as exc:
            raise ToolInvocationError(
                f"Could not extract pages {start_page}-{end_page} from {os.path.basename(source_path)}: {exc}",
                command="pypdf",
            ) from exc

    def merge(self, ordered_paths: Sequence[str], out_path: str, state: Optional[JobState] = None) -> None:
        if not ordered_paths:
            raise ToolInvocationError("No input files for merge.", command="pypdf")
        try:
            writer = PdfWriter()
            for path in ordered_paths:
                if state is not None:
                    state.raise_if_cancelled()
                for page in self._open_reader(path).pages:
                    writer.add_page(page)
            self._write(writer, out_path)
        except (ToolInvocationError, MergeCancelled):
            raise
        except Exception as exc:
            raise ToolInvocationError(f"pypdf merge failed: {exc}", command="pypdf") from exc


def _safe_member_path(member_name: str) -> Optional[str]:
    if not member_name:
        return None

    normalized = member_name.replace("\\", "/")
    if normalized.startswith("/"):
        return None
    if re.match(r"^[A-Za-z]:", normalized):
        return None

    parts = []
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            return None
        parts.append(part)
    return "/".join(parts) or None


def bundled_qpdf_path(tools_root: str) -> str:
    exe_name = "qpdf.exe" if os.name == "nt" else "qpdf"
    return os.path.join(tools_root, QPDF_FOLDER, "bin", exe_name)


def _download_file(url: str, output_path: str) -> None:
    with requests.get(url, headers={'User-Agent': 'MergeOrchestrator'}, stream=True, timeout=60) as response:
        if not response.ok:
            raise EngineUnavailableError(
                f"Failed to download qpdf ({response.status_code} {response.reason})"
            )
        with open(output_path, 'wb') as handle:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                if chunk:
                    handle.write(chunk)


def _extract_archive(zip_path: str, destination: str) -> None:
    with zipfile.ZipFile(zip_path) as archive:
        for member in archive.infolist():
            safe_name = _safe_member_path(member.filename)
            if safe_name is None:
                continue
            target = os.path.join(destination, *safe_name.split("/"))
            if member.is_dir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with archive.open(member) as source, open(target, 'wb') as sink:
                shutil.copyfileobj(source, sink)


def ensure_qpdf(configured_path: Optional[str] = None, tools_root: Optional[str] = None) -> str:
    """
    Return an invocable qpdf executable.

    Lookup order: explicit path, bundled tools folder, PATH. On Windows a
    missing qpdf is downloaded and unpacked into the tools folder once.
    """
    if configured_path:
        if os.path.isfile(configured_path):
            return configured_path
        raise EngineUnavailableError(f"Configured qpdf executable not found: {configured_path}")

    tools_root = tools_root or DEFAULT_TOOLS_ROOT
    bundled = bundled_qpdf_path(tools_root)
    if os.path.isfile(bundled):
        return bundled

    on_path = shutil.which("qpdf")
    if on_path:
        return on_path

    if os.name != "nt":
        raise EngineUnavailableError(
            "qpdf was not found. Install it with your package manager "
            "(for example 'apt install qpdf' or 'brew install qpdf') or pass an explicit qpdf path."
        )

    with _qpdf_setup_lock:
        if os.path.isfile(bundled):
            return bundled
        os.makedirs(tools_root, exist_ok=True)
        zip_path = os.path.join(tools_root, f"{QPDF_FOLDER}.zip")
        try:
            print(f"Downloading qpdf {QPDF_VERSION}...")
            _download_file(QPDF_DOWNLOAD_URL, zip_path)
            _extract_archive(zip_path, tools_root)
        except (requests.RequestException, zipfile.BadZipFile, OSError) as exc:
            raise EngineUnavailableError(f"Failed to provision qpdf: {exc}") from exc
        finally:
            try:
                os.remove(zip_path)
            except OSError:
                pass

        if not os.path.isfile(bundled):
            raise EngineUnavailableError(f"qpdf archive did not contain {os.path.basename(bundled)}.")
        return bundled


def resolve_document_engine(engine="qpdf", qpdf_path: Optional[str] = None,
                            tools_root: Optional[str] = None) -> DocumentEngine:
    """Turn an engine setting into a ready DocumentEngine instance."""
    if isinstance(engine, DocumentEngine):
        return engine
    if engine == "pypdf":
        return PypdfEngine()
    if engine == "qpdf":
        return QpdfEngine(ensure_qpdf(qpdf_path, tools_root))
    raise EngineUnavailableError(f"Unknown document engine: {engine}")
