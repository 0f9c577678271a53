"""
Merge planner - resource budgets, input classification and execution mode
Everything here is side-effect free so it can be called on every UI refresh.
"""

import math
from typing import List, NamedTuple, Optional, Sequence, Tuple

import psutil

from document_engine import build_merge_arguments
from merge_models import (
    CONVERTIBLE_KINDS,
    DIRECT_ARG_CHAR_LIMIT,
    FAST_FREE_MEMORY_RATIO,
    FAST_TOTAL_MEMORY_RATIO,
    FORMAT_PDF,
    KIND_PDF,
    MAX_FAST_MEMORY_BYTES,
    MIN_FAST_MEMORY_BYTES,
    MODE_FAST,
    MODE_NONE,
    MODE_READY,
    MODE_SAFE,
    MODE_UNSUPPORTED,
    OUTPUT_FORMATS,
    ROUTE_CONVERTIBLE,
    ROUTE_DOCUMENTS,
    ROUTE_MIXED,
    InputFile,
    MergePlan,
    UnsupportedInputError,
    coerce_input_files,
)


class Classification(NamedTuple):
    route: Optional[str]
    unsupported: List[InputFile]


def read_host_memory() -> Tuple[int, int]:
    """(available, total) bytes of host memory; zeros when the stats cannot be read."""
    try:
        stats = psutil.virtual_memory()
        return int(stats.available or 0), int(stats.total or 0)
    except Exception:
        return 0, 0


def compute_memory_limit_bytes(free_bytes: Optional[int] = None, total_bytes: Optional[int] = None) -> int:
    """Memory the single-call fast merge may assume it can use."""
    if free_bytes is None or total_bytes is None:
        host_free, host_total = read_host_memory()
        free_bytes = host_free if free_bytes is None else free_bytes
        total_bytes = host_total if total_bytes is None else total_bytes

    free_bytes = max(0, int(free_bytes or 0))
    total_bytes = max(0, int(total_bytes or 0))
    by_free = math.floor(free_bytes * FAST_FREE_MEMORY_RATIO) if free_bytes > 0 else math.inf
    by_total = math.floor(total_bytes * FAST_TOTAL_MEMORY_RATIO) if total_bytes > 0 else math.inf
    candidate = min(by_free, by_total, MAX_FAST_MEMORY_BYTES)
    return int(max(MIN_FAST_MEMORY_BYTES, candidate))


def estimate_direct_arg_chars(input_paths: Sequence[str], output_path: str) -> int:
    parts = build_merge_arguments(list(input_paths), output_path)
    return sum(len(str(part or '')) + 3 for part in parts)


def total_input_bytes(files: Sequence[InputFile]) -> int:
    return sum(max(1, int(f.size or 1)) for f in files)


def classify_files(files) -> Classification:
    """Pick the merge route from the input kinds."""
    files = coerce_input_files(files)
    if not files:
        return Classification(None, [])

    supported = [f for f in files if f.kind == KIND_PDF or f.kind in CONVERTIBLE_KINDS]
    unsupported = [f for f in files if f.kind != KIND_PDF and f.kind not in CONVERTIBLE_KINDS]
    if not supported:
        return Classification(None, unsupported)

    if all(f.kind == KIND_PDF for f in supported):
        route = ROUTE_DOCUMENTS
    elif any(f.kind == KIND_PDF for f in supported):
        route = ROUTE_MIXED
    else:
        route = ROUTE_CONVERTIBLE
    return Classification(route, unsupported)


def normalize_output_format(route: Optional[str], requested_format: Optional[str]) -> str:
    # PDF-only batches can only produce a PDF.
    if route == ROUTE_DOCUMENTS:
        return FORMAT_PDF
    return str(requested_format or FORMAT_PDF).lower().lstrip('.')


def validate_request(files, requested_format: Optional[str]) -> Tuple[List[InputFile], str, str]:
    """
    Reject a request that cannot start.

    Returns:
        (files, route, output_format) for an acceptable request

    Raises:
        UnsupportedInputError: empty list, unrecognised file kinds, unknown
            output format, or a mixed batch that does not target PDF
    """
    files = coerce_input_files(files)
    if not files:
        raise UnsupportedInputError("No files selected.")

    route, unsupported = classify_files(files)
    if unsupported:
        names = ", ".join(f.name for f in unsupported[:5])
        raise UnsupportedInputError(
            f"Unsupported files detected ({len(unsupported)}): {names}. Remove them to continue."
        )

    output_format = normalize_output_format(route, requested_format)
    if output_format not in OUTPUT_FORMATS:
        raise UnsupportedInputError(f"Unsupported output format: {requested_format}")
    if route == ROUTE_MIXED and output_format != FORMAT_PDF:
        raise UnsupportedInputError("Mixed PDF + PowerPoint/image batches can only be exported as PDF.")
    return files, route, output_format


def compute_merge_plan(
    files,
    output_path: str,
    requested_format: Optional[str] = FORMAT_PDF,
    memory_limit_bytes: Optional[int] = None,
    arg_limit_chars: int = DIRECT_ARG_CHAR_LIMIT,
) -> MergePlan:
    """Decide how a batch would be merged without starting anything."""
    files = coerce_input_files(files)
    input_paths = [f.path for f in files if f.path]
    total_bytes = total_input_bytes(files)
    if memory_limit_bytes is None:
        memory_limit_bytes = compute_memory_limit_bytes()
    arg_chars = estimate_direct_arg_chars(input_paths, output_path)

    def make(mode: str, reason: str, route: Optional[str], unsupported_count: int = 0, size: int = total_bytes) -> MergePlan:
        return MergePlan(
            mode=mode,
            reason=reason,
            total_bytes=size,
            memory_limit_bytes=memory_limit_bytes,
            arg_chars=arg_chars,
            arg_limit_chars=arg_limit_chars,
            route=route,
            unsupported_count=unsupported_count,
        )

    if not input_paths:
        return make(MODE_NONE, "no_files", None, size=0)

    route, unsupported = classify_files(files)
    if unsupported:
        return make(MODE_UNSUPPORTED, "unsupported_files", route, unsupported_count=len(unsupported))

    output_format = normalize_output_format(route, requested_format)
    if output_format not in OUTPUT_FORMATS:
        return make(MODE_UNSUPPORTED, "unsupported_format", route)

    if route == ROUTE_MIXED and output_format != FORMAT_PDF:
        return make(MODE_UNSUPPORTED, "mixed_requires_pdf", route)

    if route != ROUTE_DOCUMENTS:
        return make(MODE_READY, "conversion_required", route)

    if arg_chars > arg_limit_chars:
        return make(MODE_SAFE, "command_length", route)

    if total_bytes > memory_limit_bytes:
        return make(MODE_SAFE, "memory", route)

    return make(MODE_FAST, "within_limits", route)


def plan_split_ranges(file_size: int, page_count: int, split_trigger_bytes: int) -> List[Tuple[int, int]]:
    """
    Page ranges an oversized file is cut into.

    The segment count follows the byte size; pages are dealt out evenly and the
    last range may be shorter. Ranges are 1-based, inclusive and contiguous.
    """
    file_size = max(1, int(file_size or 1))
    by_size = max(1, math.ceil(file_size / split_trigger_bytes))
    pages_per_segment = max(1, math.ceil(page_count / by_size))

    ranges = []
    for seg in range(by_size):
        start = seg * pages_per_segment + 1
        if start > page_count:
            break
        end = min(page_count, start + pages_per_segment - 1)
        ranges.append((start, end))
    return ranges
