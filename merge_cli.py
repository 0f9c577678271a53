"""
Command-line interface for the merge engine.

Usage:
    merge-files plan a.pdf b.pdf
    merge-files merge a.pdf b.pdf -o combined.pdf
    merge-files merge deck.pptx photo.png -o slides.pptx -f pptx
"""

import argparse
import json
import os
import sys
import threading
from typing import List, Optional

from merge_models import FORMAT_PDF, OUTPUT_FORMATS, MergeError, MergeProgress, read_file_metadata
from merge_planner import classify_files, normalize_output_format
from merger_engine import MergeOrchestrator, match_output_extension, sanitize_output_name

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="merge-files",
        description="Merge PDFs, PowerPoint decks and images into one PDF or deck",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  merge-files plan report.pdf appendix.pdf
  merge-files merge report.pdf appendix.pdf -o combined.pdf
  merge-files merge intro.pptx chart.png -o talk.pptx -f pptx
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    plan_parser = subparsers.add_parser("plan", help="Show how a batch would be merged")
    plan_parser.add_argument("files", nargs="+", help="Input files, in merge order")
    plan_parser.add_argument("-o", "--output", default="merged-output", help="Output name or path")
    plan_parser.add_argument("-f", "--format", choices=OUTPUT_FORMATS, default=FORMAT_PDF,
                             help="Output format (default: pdf)")

    merge_parser = subparsers.add_parser("merge", help="Merge files into one output")
    merge_parser.add_argument("files", nargs="+", help="Input files, in merge order")
    merge_parser.add_argument("-o", "--output", required=True, help="Output file path")
    merge_parser.add_argument("-f", "--format", choices=OUTPUT_FORMATS, default=FORMAT_PDF,
                              help="Output format (default: pdf)")
    merge_parser.add_argument("--engine", choices=["qpdf", "pypdf"], default="qpdf",
                              help="Document engine (default: qpdf)")
    merge_parser.add_argument("--qpdf", dest="qpdf_path", help="Path to a qpdf executable")
    merge_parser.add_argument("--converter", choices=["auto", "powerpoint", "libreoffice"], default="auto",
                              help="Slide deck converter (default: auto)")
    merge_parser.add_argument("--temp-dir", help="Folder for job workspaces")
    merge_parser.add_argument("--logs-dir", help="Folder for run logs")
    merge_parser.add_argument("--no-bookmarks", action="store_true",
                              help="Do not add per-source bookmarks to converted PDFs")
    return parser


def _output_format(files, requested_format: str) -> str:
    # PDF-only batches are always written as PDF, whatever -f asked for.
    return normalize_output_format(classify_files(files).route, requested_format)


def _resolve_output_path(output: str, output_format: str) -> str:
    folder, name = os.path.split(output)
    name = match_output_extension(name, output_format)
    return os.path.join(folder, sanitize_output_name(name, output_format))


def _print_progress(event: MergeProgress) -> None:
    print(f"  [{event.percent:3d}%] {event.label}")


def cmd_plan(args, orchestrator: MergeOrchestrator) -> int:
    files = read_file_metadata(args.files)
    missing = len(args.files) - len(files)
    if missing:
        print(f"Error: {missing} input file(s) could not be read", file=sys.stderr)
        return EXIT_FAILED
    output_format = _output_format(files, args.format)
    output_path = os.path.abspath(_resolve_output_path(args.output, output_format))
    plan = orchestrator.get_merge_plan(files, output_path, output_format)
    print(json.dumps(plan.to_dict(), indent=2))
    return EXIT_OK


def cmd_merge(args, orchestrator: MergeOrchestrator) -> int:
    files = read_file_metadata(args.files)
    if len(files) != len(args.files):
        print("Error: some input files could not be read", file=sys.stderr)
        return EXIT_FAILED

    output_format = _output_format(files, args.format)
    output_path = os.path.abspath(_resolve_output_path(args.output, output_format))
    outcome = {}

    def worker():
        try:
            outcome['result'] = orchestrator.merge_files(
                files,
                output_path,
                output_format,
                progress_callback=_print_progress,
            )
        except Exception as exc:
            outcome['error'] = exc

    thread = threading.Thread(target=worker, name="merge-job", daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(0.2)
    except KeyboardInterrupt:
        print("\nCancelling merge...")
        orchestrator.request_cancel()
        thread.join()

    error = outcome.get('error')
    if error is not None:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILED

    result = outcome.get('result') or {}
    if result.get('canceled'):
        print("Merge cancelled; no output written.")
        return EXIT_CANCELLED

    for warning in result.get('warnings', []):
        print(f"Warning: {warning.get('message')}")
    print(f"Saved: {result.get('output_path')}")
    return EXIT_OK


def build_orchestrator(args) -> MergeOrchestrator:
    options = {}
    if args.command == "merge":
        options.update(
            engine=args.engine,
            qpdf_path=args.qpdf_path,
            office_converter=args.converter,
            temp_root=args.temp_dir,
            logs_dir=args.logs_dir,
            build_bookmarks=not args.no_bookmarks,
        )
    return MergeOrchestrator(**options)


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    try:
        orchestrator = build_orchestrator(args)
        if args.command == "plan":
            return cmd_plan(args, orchestrator)
        return cmd_merge(args, orchestrator)
    except MergeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
