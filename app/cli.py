import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.backend.process import process_files, write_json_output
from labsupply.config import load_settings
from labsupply.errors import ConfigurationError
from labsupply.intake import collect_image_paths
from labsupply.logger import get_logger, set_level

logger = get_logger("labsupply.app.cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Extract product, REF, LOT and expiration from lab supply label images and export to Excel."
    )
    parser.add_argument(
        "--inputs",
        nargs="+",
        required=True,
        help="Image file paths or directories.",
    )
    parser.add_argument(
        "--output-dir",
        default=".",
        help="Directory to write the workbook and result JSON.",
    )
    parser.add_argument(
        "--output-name",
        default=None,
        help="Workbook filename (default: EXPORT_FILENAME setting, LabSupplyData.xlsx).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum in-flight extraction requests (overrides CONCURRENCY_LIMIT).",
    )
    parser.add_argument(
        "--pause-threshold",
        type=int,
        default=None,
        help="Requests per window before a cooldown, 0 disables (overrides PAUSE_THRESHOLD).",
    )
    parser.add_argument(
        "--pause-duration",
        type=int,
        default=None,
        help="Cooldown length in ticks (overrides PAUSE_DURATION).",
    )
    parser.add_argument(
        "--no-json",
        action="store_true",
        help="Do not write the result JSON file.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        set_level(logging.DEBUG)

    overrides = {}
    if args.concurrency is not None:
        overrides["CONCURRENCY_LIMIT"] = args.concurrency
    if args.pause_threshold is not None:
        overrides["PAUSE_THRESHOLD"] = args.pause_threshold
    if args.pause_duration is not None:
        overrides["PAUSE_DURATION"] = args.pause_duration
    try:
        settings = load_settings(**overrides)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        print(f"[error] {exc}")
        return 2

    file_paths = collect_image_paths(args.inputs)
    if not file_paths:
        print("[error] no valid input files found.")
        return 1

    result = process_files(
        file_paths=file_paths,
        settings=settings,
        output_dir=args.output_dir,
        output_name=args.output_name,
    )

    for item in result["items"]:
        if item["status"] == "error":
            print(f"[failed] {item['filename']}: {item['error']}")
    for rejected in result["rejected"]:
        print(f"[skipped] {rejected['file']}: {rejected['error']}")

    if not args.no_json:
        print("JSON:", write_json_output(result, args.output_dir))
    if result["export_path"]:
        print("Workbook:", result["export_path"])
        return 0
    print(f"[notice] {result['notice']}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
