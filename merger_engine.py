"""
Merge Engine - job orchestration for combining PDFs, slide decks and images
Plans the run, drives fast or chunked merging, handles cancellation and cleanup
"""

import os
import shutil
import tempfile
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from document_engine import DocumentEngine, resolve_document_engine
from merge_models import (
    DECK_KINDS,
    DIRECT_ARG_CHAR_LIMIT,
    FORMAT_PDF,
    FORMAT_PPTX,
    KIND_IMAGE,
    KIND_LEGACY_DECK,
    KIND_PDF,
    MAX_INPUTS_PER_MERGE_CALL,
    MODE_FAST,
    OUTPUT_FORMATS,
    PHASE_CANCELED,
    PHASE_DONE,
    PHASE_MERGING,
    PHASE_WRITING,
    ROUTE_DOCUMENTS,
    SPLIT_TRIGGER_BYTES,
    BookmarkEntry,
    JobState,
    MergeBusyError,
    MergeCancelled,
    MergeError,
    MergeJob,
    MergePlan,
    MergeProgress,
    NoOutputError,
    RunLogger,
    SplitSegment,
    _notify,
    _record_warning,
    cleanup_workspace,
    create_job_workspace,
    is_inside,
    new_job_id,
)
from merge_planner import compute_merge_plan, plan_split_ranges, validate_request
from office_converter import OfficeConverter, select_office_converter

try:
    from pypdf import PdfReader, PdfWriter
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False

DEFAULT_LOGS_DIR = os.path.join(tempfile.gettempdir(), "merge_orchestrator_logs")

ProgressCallback = Callable[[MergeProgress], None]


def sanitize_output_name(output_name: Optional[str], output_format: str = FORMAT_PDF) -> str:
    """Make a user-typed output name safe to use as a file name."""
    cleaned = str(output_name or 'merged-output').strip()
    sanitized = ''.join('-' if ch in '<>:"/\\|?*' else ch for ch in cleaned)
    while '--' in sanitized:
        sanitized = sanitized.replace('--', '-')
    extension = f".{output_format}"
    return sanitized if sanitized.lower().endswith(extension) else f"{sanitized}{extension}"


def match_output_extension(output_path: str, output_format: str) -> str:
    """Swap an output-format extension that disagrees with the format actually written."""
    root, ext = os.path.splitext(output_path)
    if ext.lower().lstrip('.') in OUTPUT_FORMATS and ext.lower() != f".{output_format}":
        return f"{root}.{output_format}"
    return output_path


def _remove_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except OSError:
        pass


def _file_snapshot(path: str) -> Optional[Tuple[int, int]]:
    try:
        stats = os.stat(path)
    except OSError:
        return None
    return stats.st_mtime_ns, stats.st_size


class MergeItem(NamedTuple):
    path: str
    name: str
    size: int


class JobRegistry:
    """Holds the single active merge job of this process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Optional[MergeJob] = None

    def acquire(self, job: MergeJob) -> None:
        with self._lock:
            if self._active is not None:
                raise MergeBusyError("A merge is already in progress.")
            self._active = job

    def release(self, job: MergeJob) -> None:
        with self._lock:
            if self._active is job:
                self._active = None

    @property
    def active_job(self) -> Optional[MergeJob]:
        with self._lock:
            return self._active

    def request_cancel(self) -> bool:
        """Flag the active job for cancellation and kill its running tool. Returns False when idle."""
        with self._lock:
            job = self._active
        if job is None:
            return False
        job.state.request_cancel()
        return True


_job_registry = JobRegistry()


def emit_progress(
    callback: Optional[ProgressCallback],
    state: JobState,
    total: int,
    phase: str = PHASE_MERGING,
    percent: Optional[int] = None,
    label: Optional[str] = None,
    done: bool = False,
) -> None:
    if percent is None:
        percent = min(95, round((state.completed_units / max(1, total)) * 95))
    event = MergeProgress(
        completed=state.completed_units,
        total=total,
        percent=percent,
        label=label if label is not None else state.current_label,
        phase=phase,
        done=done,
    )
    _notify(callback, event)


class ChunkedMergeExecutor:
    """
    Runs the merge of one job through the document engine.

    The fast path hands every input to a single merge call. The safe path folds
    inputs into an accumulator PDF in the job workspace, at most
    max_inputs_per_call files per call, cutting oversized inputs into page-range
    segments first. Output order always equals input order.
    """

    def __init__(
        self,
        engine: DocumentEngine,
        state: JobState,
        workspace_dir: str,
        total_units: int,
        progress_callback: Optional[ProgressCallback] = None,
        run_logger: Optional[RunLogger] = None,
        split_trigger_bytes: int = SPLIT_TRIGGER_BYTES,
        max_inputs_per_call: int = MAX_INPUTS_PER_MERGE_CALL,
    ):
        self.engine = engine
        self.state = state
        self.workspace_dir = workspace_dir
        self.total_units = total_units
        self.progress_callback = progress_callback
        self.run_logger = run_logger
        self.split_trigger_bytes = max(1, int(split_trigger_bytes))
        self.max_inputs_per_call = max(2, int(max_inputs_per_call))

        self.status = "idle"
        self.accumulator: Optional[str] = None
        self.pending: List[MergeItem] = []
        self.merge_step = 0
        self.merge_calls = 0
        self.flush_cycles = 0
        self.split_segments = 0
        self.fallback_used = False

    def _log(self, level: str, event: str, message: str, **context) -> None:
        if self.run_logger:
            self.run_logger.log(level, event, message, **context)

    def emit(self, phase: str = PHASE_MERGING, percent: Optional[int] = None,
             label: Optional[str] = None, done: bool = False) -> None:
        emit_progress(self.progress_callback, self.state, self.total_units, phase, percent, label, done)

    def set_label(self, label: str) -> None:
        self.state.current_label = label
        self.emit()

    def advance(self, units: int, label: str) -> None:
        self.state.completed_units = min(self.total_units, self.state.completed_units + units)
        self.set_label(label)

    def emit_done(self) -> None:
        self.state.completed_units = self.total_units
        self.state.current_label = "Finished"
        self.status = "done"
        self.emit(phase=PHASE_DONE, percent=100, done=True)

    def _next_step_path(self) -> str:
        self.merge_step += 1
        return os.path.join(self.workspace_dir, f"merged-step-{self.merge_step:05d}.pdf")

    def _merge(self, inputs: Sequence[str], out_path: str) -> None:
        self.state.raise_if_cancelled()
        self.merge_calls += 1
        self.engine.merge(list(inputs), out_path, self.state)

    def _replace_accumulator(self, new_path: str) -> None:
        previous = self.accumulator
        # Only workspace artifacts are ours to delete; a bare caller file may be the accumulator.
        if previous and previous != new_path and is_inside(previous, self.workspace_dir):
            _remove_quietly(previous)
        self.accumulator = new_path

    def try_fast_merge(self, input_paths: Sequence[str], output_path: str) -> bool:
        """
        Merge everything in one engine call straight into output_path.

        Returns False when the call failed for a reason other than cancellation;
        the partial output is removed and the caller continues on the safe path.
        """
        self.status = "fast-attempt"
        self.set_label("Fast mode: merging directly")
        before = _file_snapshot(output_path)
        try:
            self._merge(input_paths, output_path)
        except MergeCancelled:
            self._discard_partial_output(output_path, before)
            raise
        except (MergeError, OSError) as exc:
            self._discard_partial_output(output_path, before)
            if self.state.cancel_requested:
                raise MergeCancelled() from exc
            self.fallback_used = True
            self._log("warning", "fast_merge_failed", "Direct merge failed; falling back to safe mode", error=str(exc))
            self.set_label("Switching to safe mode (slower)")
            return False

        self.state.completed_units = self.total_units
        self._log("info", "output_written", "Fast merge wrote output", output=output_path, inputs=len(input_paths))
        return True

    @staticmethod
    def _discard_partial_output(output_path: str, before: Optional[Tuple[int, int]]) -> None:
        if _file_snapshot(output_path) != before:
            _remove_quietly(output_path)

    def flush_pending(self) -> None:
        """Fold the pending small inputs into the accumulator."""
        if not self.pending:
            return

        batches = [
            self.pending[i:i + self.max_inputs_per_call]
            for i in range(0, len(self.pending), self.max_inputs_per_call)
        ]
        for batch in batches:
            self.state.raise_if_cancelled()
            self.flush_cycles += 1
            batch_paths = [item.path for item in batch]

            if not self.accumulator and len(batch_paths) == 1:
                self.accumulator = batch_paths[0]
            else:
                merge_inputs = [self.accumulator, *batch_paths] if self.accumulator else batch_paths
                out_path = self._next_step_path()
                self.set_label(f"Merging files ({self.state.completed_units}/{self.total_units})")
                self._merge(merge_inputs, out_path)
                self._replace_accumulator(out_path)
                self._log("info", "merge_step", "Folded batch into accumulator",
                          step=self.merge_step, inputs=len(merge_inputs), accumulator=out_path)

            self.state.completed_units += len(batch)
            self.emit()

        self.pending = []

    def split_into_segments(self, item: MergeItem, file_index: int) -> List[SplitSegment]:
        self.state.raise_if_cancelled()
        page_count = self.engine.page_count(item.path, self.state)
        ranges = plan_split_ranges(item.size, page_count, self.split_trigger_bytes)

        segments = []
        for seg_no, (start, end) in enumerate(ranges, 1):
            self.state.raise_if_cancelled()
            self.set_label(f"Splitting {item.name} ({start}-{end})")
            split_path = os.path.join(self.workspace_dir, f"split-{file_index + 1:04d}-{seg_no:04d}.pdf")
            self.engine.extract_range(item.path, start, end, split_path, self.state)
            segments.append(SplitSegment(item.path, start, end, split_path))
            self.split_segments += 1
            self._log("info", "split_segment", "Extracted page range",
                      file=item.path, pages=f"{start}-{end}", page_count=page_count)
        return segments

    def _fold_oversized(self, item: MergeItem, file_index: int) -> None:
        segments = self.split_into_segments(item, file_index)
        if is_inside(item.path, self.workspace_dir):
            _remove_quietly(item.path)

        remaining = list(segments)
        while remaining:
            self.state.raise_if_cancelled()
            # Leave one slot for the accumulator itself.
            capacity = self.max_inputs_per_call - 1 if self.accumulator else self.max_inputs_per_call
            chunk, remaining = remaining[:capacity], remaining[capacity:]
            merge_inputs = ([self.accumulator] if self.accumulator else []) + [s.temp_path for s in chunk]
            out_path = self._next_step_path()
            self.set_label(f"Merging split parts: {item.name}")
            self._merge(merge_inputs, out_path)
            self._replace_accumulator(out_path)
            for segment in chunk:
                _remove_quietly(segment.temp_path)
            self._log("info", "merge_step", "Folded split parts into accumulator",
                      step=self.merge_step, inputs=len(merge_inputs), file=item.path)

    def accumulate(self, items: Sequence[MergeItem]) -> str:
        """Run the safe path over items in order and return the final accumulator path."""
        self.status = "safe-accumulate"
        for index, item in enumerate(items):
            self.state.raise_if_cancelled()
            size = max(1, int(item.size or 1))

            if size < self.split_trigger_bytes:
                self.set_label(f"Queued: {item.name}")
                self.pending.append(item)
                if len(self.pending) >= self.max_inputs_per_call:
                    self.flush_pending()
                continue

            # Merge all prior small files first, then process this large file only.
            self.flush_pending()
            self._fold_oversized(item, index)
            self.state.completed_units += 1
            self.emit()

        self.flush_pending()
        self.state.raise_if_cancelled()

        if not self.accumulator:
            raise NoOutputError("No merged output was produced.")
        return self.accumulator

    def write_output(self, accumulator: str, output_path: str) -> None:
        """Copy the finished artifact to its destination."""
        self.state.raise_if_cancelled()
        self.status = "writing"
        self.state.completed_units = self.total_units
        self.state.current_label = "Writing file to disk"
        self.emit(phase=PHASE_WRITING, percent=99)

        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        if os.path.abspath(accumulator) != os.path.abspath(output_path):
            shutil.copyfile(accumulator, output_path)
        self._log("info", "output_written", "Wrote merged output", output=output_path)


class BookmarkBuilder:
    """Adds one outline entry per merged source to a finished PDF."""

    @staticmethod
    def compute_entries(sources: Sequence[Tuple[str, int]]) -> List[BookmarkEntry]:
        """
        Build entries from (source name, page count) pairs in merge order.

        Titles drop the extension. A source that starts on the same page as an
        earlier one (an empty source) gets no entry of its own.
        """
        entries: List[BookmarkEntry] = []
        used_pages = set()
        offset = 0
        for source_name, page_count in sources:
            title = os.path.splitext(os.path.basename(str(source_name)))[0]
            if offset not in used_pages:
                entries.append(BookmarkEntry(title=title, start_page_index=offset))
                used_pages.add(offset)
            offset += max(0, int(page_count or 0))
        return entries

    @staticmethod
    def apply(source_pdf: str, dest_pdf: str, entries: Sequence[BookmarkEntry]) -> str:
        if not HAS_PYPDF:
            raise ImportError("pypdf library is required for adding bookmarks")
        writer = PdfWriter(clone_from=PdfReader(source_pdf))
        total_pages = len(writer.pages)
        for entry in entries:
            if 0 <= entry.start_page_index < total_pages:
                writer.add_outline_item(entry.title, entry.start_page_index)
        with open(dest_pdf, 'wb') as handle:
            writer.write(handle)
        return dest_pdf


class MergeOrchestrator:
    """Coordinates the entire merging process"""

    def __init__(
        self,
        engine="qpdf",
        qpdf_path: Optional[str] = None,
        tools_root: Optional[str] = None,
        office_converter="auto",
        temp_root: Optional[str] = None,
        logs_dir: Optional[str] = None,
        split_trigger_bytes: int = SPLIT_TRIGGER_BYTES,
        max_inputs_per_call: int = MAX_INPUTS_PER_MERGE_CALL,
        arg_char_limit: int = DIRECT_ARG_CHAR_LIMIT,
        memory_limit_bytes: Optional[int] = None,
        enable_detailed_logging: bool = True,
        log_privacy_mode: str = "redacted",
        build_bookmarks: bool = True,
        registry: Optional[JobRegistry] = None,
    ):
        self.engine = engine
        self.qpdf_path = qpdf_path
        self.tools_root = tools_root
        self.office_converter = office_converter
        self.temp_root = temp_root
        self.logs_dir = logs_dir or DEFAULT_LOGS_DIR
        self.split_trigger_bytes = max(1, int(split_trigger_bytes))
        self.max_inputs_per_call = max(2, int(max_inputs_per_call))
        self.arg_char_limit = int(arg_char_limit)
        self.memory_limit_bytes = memory_limit_bytes
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode
        self.build_bookmarks = build_bookmarks
        self.registry = registry or _job_registry

    def get_merge_plan(
        self,
        files,
        output_path: Optional[str] = None,
        requested_format: str = FORMAT_PDF,
        output_name: str = "merged-output",
    ) -> MergePlan:
        """Plan a batch without starting a job."""
        if not output_path:
            output_path = os.path.join(os.getcwd(), sanitize_output_name(output_name, requested_format or FORMAT_PDF))
        return compute_merge_plan(
            files,
            output_path,
            requested_format,
            memory_limit_bytes=self.memory_limit_bytes,
            arg_limit_chars=self.arg_char_limit,
        )

    def request_cancel(self) -> bool:
        return self.registry.request_cancel()

    def is_busy(self) -> bool:
        return self.registry.active_job is not None

    def merge_files(
        self,
        files,
        output_path: str,
        requested_format: str = FORMAT_PDF,
        progress_callback: Optional[ProgressCallback] = None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict:
        """
        Main entry point for merging

        Args:
            files: ordered InputFile objects, {path, name, size, kind} dicts or paths
            output_path: destination file
            requested_format: "pdf" or "pptx"
            progress_callback: Optional callback receiving MergeProgress events
            event_callback: Optional callback receiving run log payloads

        Returns:
            Dict describing the outcome; {"canceled": True, ...} when cancelled

        Raises:
            UnsupportedInputError: before any job state or workspace exists
            MergeBusyError: when another job is active
            EngineUnavailableError, ToolInvocationError, NoOutputError: after cleanup
        """
        files, route, output_format = validate_request(files, requested_format)
        requested_path = os.path.abspath(output_path)
        output_path = match_output_extension(requested_path, output_format)
        warnings: List[Dict] = []
        if output_path != requested_path:
            _record_warning(
                warnings,
                'output_renamed',
                f"Output is a {output_format.upper()}; saved as {os.path.basename(output_path)}",
                requested=requested_path,
                output=output_path,
            )
        job = MergeJob(
            id=new_job_id(),
            files=files,
            output_path=output_path,
            requested_format=output_format,
            route=route,
        )
        self.registry.acquire(job)

        state = job.state
        run_logger = None
        executor: Optional[ChunkedMergeExecutor] = None
        try:
            run_logger = RunLogger(
                logs_dir=self.logs_dir,
                run_id=job.id,
                enabled=self.enable_detailed_logging,
                privacy_mode=self.log_privacy_mode,
                event_callback=event_callback,
            )
            print(f"\nMerging {len(files)} file(s) as {output_format.upper()}: {os.path.basename(output_path)}")
            run_logger.log("info", "job_accepted", "Merge request accepted",
                           files=len(files), route=route, format=output_format, output=output_path)
            for warning in warnings:
                run_logger.log("warning", warning['code'], warning['message'], output=output_path)
            emit_progress(progress_callback, state, len(files))

            engine = resolve_document_engine(self.engine, self.qpdf_path, self.tools_root)
            converter = None
            if route != ROUTE_DOCUMENTS:
                needs_office = output_format == FORMAT_PPTX or any(f.kind in DECK_KINDS for f in files)
                converter = select_office_converter(self.office_converter, engine, require_office=needs_office)
            state.raise_if_cancelled()

            job.workspace_dir = create_job_workspace(job.id, self.temp_root)
            executor = ChunkedMergeExecutor(
                engine,
                state,
                job.workspace_dir,
                total_units=len(files),
                progress_callback=progress_callback,
                run_logger=run_logger,
                split_trigger_bytes=self.split_trigger_bytes,
                max_inputs_per_call=self.max_inputs_per_call,
            )

            plan = None
            bookmarks: List[BookmarkEntry] = []
            if route == ROUTE_DOCUMENTS:
                plan = self._run_documents(job, executor, run_logger)
            else:
                bookmarks = self._run_conversion_route(job, engine, converter, executor, warnings, run_logger)

            executor.emit_done()
            run_logger.log("info", "job_completed", "Merge finished",
                           output=output_path, merge_calls=executor.merge_calls, warnings=len(warnings))
            print(f"    Created: {os.path.basename(output_path)} ({executor.merge_calls} merge call(s))")
            return self._build_result(job, executor, plan, bookmarks, warnings, run_logger)
        except Exception as exc:
            if isinstance(exc, MergeCancelled) or state.cancel_requested:
                if executor is not None:
                    executor.status = "canceled"
                if run_logger is not None:
                    run_logger.log("warning", "job_cancelled", "Merge cancelled by user",
                                   completed=state.completed_units, total=len(files))
                emit_progress(progress_callback, state, len(files), phase=PHASE_CANCELED, percent=0, label="Canceled")
                print("Merge cancelled.")
                return self._build_cancelled_result(job, warnings, run_logger)

            if executor is not None:
                executor.status = "failed"
            if run_logger is not None:
                run_logger.log("error", "job_failed", "Fatal merge error", error=str(exc))
            raise
        finally:
            state.terminate_active_process()
            if job.workspace_dir:
                cleanup_workspace(job.workspace_dir)
                if run_logger is not None:
                    run_logger.log("info", "workspace_removed", "Removed job workspace", workspace=job.workspace_dir)
            if run_logger is not None:
                run_logger.close()
            self.registry.release(job)

    def _run_documents(self, job: MergeJob, executor: ChunkedMergeExecutor, run_logger: RunLogger) -> MergePlan:
        executor.status = "planning"
        plan = compute_merge_plan(
            job.files,
            job.output_path,
            FORMAT_PDF,
            memory_limit_bytes=self.memory_limit_bytes,
            arg_limit_chars=self.arg_char_limit,
        )
        run_logger.log(
            "info",
            "plan_computed",
            f"Planned {plan.mode} merge ({plan.reason})",
            mode=plan.mode,
            reason=plan.reason,
            total_bytes=plan.total_bytes,
            memory_limit_bytes=plan.memory_limit_bytes,
            arg_chars=plan.arg_chars,
        )

        if plan.mode == MODE_FAST and executor.try_fast_merge([f.path for f in job.files], job.output_path):
            return plan

        items = [MergeItem(f.path, f.name, f.size) for f in job.files]
        final_path = executor.accumulate(items)
        executor.write_output(final_path, job.output_path)
        return plan

    def _run_conversion_route(
        self,
        job: MergeJob,
        engine: DocumentEngine,
        converter: OfficeConverter,
        executor: ChunkedMergeExecutor,
        warnings: List[Dict],
        run_logger: RunLogger,
    ) -> List[BookmarkEntry]:
        """Convert decks/images as the output format requires, then merge and outline."""
        state = job.state
        workspace = job.workspace_dir
        conversion_dir = os.path.join(workspace, "converted")
        os.makedirs(conversion_dir, exist_ok=True)

        if job.requested_format == FORMAT_PPTX:
            with converter:
                sources = self._modernize_legacy_decks(job, converter, executor, conversion_dir, run_logger)
                executor.set_label("Building presentation")
                deck_path = os.path.join(workspace, "composed.pptx")
                converter.deck_batch_to_final_format(sources, FORMAT_PPTX, deck_path, state)
            executor.advance(len(job.files), "Presentation built")
            executor.write_output(deck_path, job.output_path)
            return []

        if all(f.kind == KIND_IMAGE for f in job.files):
            executor.set_label(f"Converting {len(job.files)} image(s)")
            merged_path = os.path.join(workspace, "images.pdf")
            with converter:
                converter.deck_batch_to_final_format([f.path for f in job.files], FORMAT_PDF, merged_path, state)
            executor.advance(len(job.files), f"Converted {len(job.files)} image(s)")
            run_logger.log("info", "conversion_step", "Paginated images", count=len(job.files))
            page_counts = [(f.name, 1) for f in job.files]
        else:
            with converter:
                items, page_counts = self._convert_to_pdf_items(job, engine, converter, executor, conversion_dir, run_logger)
            merged_path = executor.accumulate(items)

        entries: List[BookmarkEntry] = []
        if self.build_bookmarks:
            state.raise_if_cancelled()
            merged_path, entries = self._add_bookmarks(merged_path, page_counts, workspace, warnings, run_logger)
        executor.write_output(merged_path, job.output_path)
        return entries

    def _modernize_legacy_decks(self, job, converter, executor, conversion_dir, run_logger) -> List[str]:
        sources = []
        for f in job.files:
            job.state.raise_if_cancelled()
            if f.kind == KIND_LEGACY_DECK:
                executor.set_label(f"Converting {f.name}")
                sources.append(converter.legacy_deck_to_modern_deck(f.path, conversion_dir, job.state))
                run_logger.log("info", "conversion_step", "Converted legacy deck", file=f.path)
            else:
                sources.append(f.path)
        return sources

    def _convert_to_pdf_items(
        self,
        job: MergeJob,
        engine: DocumentEngine,
        converter: OfficeConverter,
        executor: ChunkedMergeExecutor,
        conversion_dir: str,
        run_logger: RunLogger,
    ) -> Tuple[List[MergeItem], List[Tuple[str, int]]]:
        state = job.state
        items: List[MergeItem] = []
        page_counts: List[Tuple[str, int]] = []

        for index, f in enumerate(job.files, 1):
            state.raise_if_cancelled()
            if f.kind == KIND_PDF:
                pdf_path = f.path
            else:
                executor.set_label(f"Converting {f.name}")
                if f.kind == KIND_IMAGE:
                    pdf_path = converter.image_to_single_page_document(
                        f.path, os.path.join(conversion_dir, f"{index:04d}-image.pdf")
                    )
                else:
                    deck_path = f.path
                    if f.kind == KIND_LEGACY_DECK:
                        deck_path = converter.legacy_deck_to_modern_deck(f.path, conversion_dir, state)
                    pdf_path = converter.deck_batch_to_final_format(
                        [deck_path], FORMAT_PDF, os.path.join(conversion_dir, f"{index:04d}-deck.pdf"), state
                    )
                run_logger.log("info", "conversion_step", "Converted source to PDF", file=f.path, kind=f.kind)

            size = f.size if pdf_path == f.path else os.path.getsize(pdf_path)
            pages = engine.page_count(pdf_path, state) if self.build_bookmarks else 0
            items.append(MergeItem(pdf_path, f.name, size))
            page_counts.append((f.name, pages))

        return items, page_counts

    def _add_bookmarks(
        self,
        merged_path: str,
        page_counts: Sequence[Tuple[str, int]],
        workspace: str,
        warnings: List[Dict],
        run_logger: RunLogger,
    ) -> Tuple[str, List[BookmarkEntry]]:
        entries = BookmarkBuilder.compute_entries(page_counts)
        outlined_path = os.path.join(workspace, "outlined.pdf")
        try:
            BookmarkBuilder.apply(merged_path, outlined_path, entries)
        except Exception as exc:
            # The merge itself stands; report the missing outline separately.
            _record_warning(
                warnings,
                'bookmarks_failed',
                'Could not add source bookmarks; output written without them',
                error=str(exc),
            )
            run_logger.log("warning", "bookmarks_failed", "Could not add source bookmarks", error=str(exc))
            _remove_quietly(outlined_path)
            return merged_path, []
        return outlined_path, entries

    def _build_result(
        self,
        job: MergeJob,
        executor: ChunkedMergeExecutor,
        plan: Optional[MergePlan],
        bookmarks: List[BookmarkEntry],
        warnings: List[Dict],
        run_logger: RunLogger,
    ) -> Dict:
        if job.route != ROUTE_DOCUMENTS:
            strategy = "conversion"
        elif plan is not None and plan.mode == MODE_FAST and not executor.fallback_used:
            strategy = "fast"
        else:
            strategy = "safe"
        result = {
            'canceled': False,
            'output_path': job.output_path,
            'run_id': job.id,
            'route': job.route,
            'output_format': job.requested_format,
            'strategy': strategy,
            'fallback_used': executor.fallback_used,
            'merge_calls': executor.merge_calls,
            'flush_cycles': executor.flush_cycles,
            'split_segments': executor.split_segments,
            'bookmarks': [{'title': b.title, 'page_index': b.start_page_index} for b in bookmarks],
            'warnings': warnings,
            'logs': {
                'text_log': run_logger.text_log_path,
                'jsonl_log': run_logger.jsonl_log_path,
            },
        }
        if plan is not None:
            result['plan'] = plan.to_dict()
        return result

    @staticmethod
    def _build_cancelled_result(job: MergeJob, warnings: List[Dict], run_logger: Optional[RunLogger]) -> Dict:
        result = {
            'canceled': True,
            'run_id': job.id,
            'route': job.route,
            'completed': job.state.completed_units,
            'total': len(job.files),
            'warnings': warnings,
        }
        if run_logger is not None:
            result['logs'] = {
                'text_log': run_logger.text_log_path,
                'jsonl_log': run_logger.jsonl_log_path,
            }
        return result
