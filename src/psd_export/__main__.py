import argparse
import logging
from typing import Optional

from psd_export.config import Config
from psd_export.constants import ProcessingMode, ProjectStatus
from psd_export.document import NodeProtocol, open_document
from psd_export.exceptions import ExportError
from psd_export.service import ProjectService
from psd_export.store import MemoryStore, SQLiteStore
from psd_export.version import __version__

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="psd-export command line utility.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Be more verbose.")
    parser.add_argument("--version", action="version", version=__version__)

    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process", help="Export layers, groups, text and slices of a PSD file"
    )
    process_parser.add_argument("input_file", help="Input PSD or PSB file")
    process_parser.add_argument(
        "-o", "--output", default=None, help="Output directory (public path)"
    )
    process_parser.add_argument(
        "--scales", default="1x", help="Comma-separated scale factors, e.g. 1x,2x"
    )
    process_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in ProcessingMode],
        default=ProcessingMode.NORMAL.value,
        help="Processing mode",
    )
    process_parser.add_argument(
        "--db", default=None, help="SQLite database file; in-memory when omitted"
    )

    show_parser = subparsers.add_parser("show", help="Show the layer tree")
    show_parser.add_argument("input_file", help="Input PSD or PSB file")

    return parser.parse_args(argv)


def _print_tree(node: NodeProtocol, depth: int = 0) -> None:
    for child in node.children:
        bounds = child.bounds
        print(
            "%s%s %r (%d, %d, %d, %d)%s"
            % (
                "  " * depth,
                child.kind.value,
                child.name,
                bounds.x,
                bounds.y,
                bounds.width,
                bounds.height,
                "" if child.visible else " hidden",
            )
        )
        _print_tree(child, depth + 1)


def main(argv: Optional[list[str]] = None) -> Optional[int]:
    args = parse_args(argv)

    logging.basicConfig(level=logging.WARNING)
    package_logger = logging.getLogger("psd_export")
    if args.verbose:
        package_logger.setLevel(logging.DEBUG)
    else:
        package_logger.setLevel(logging.INFO)

    if args.command == "process":
        config = Config.from_env()
        if args.output:
            config.public_path = args.output
        scales = [s.strip() for s in args.scales.split(",") if s.strip()]
        store = SQLiteStore(args.db) if args.db else MemoryStore()
        service = ProjectService(store, config)
        try:
            project = service.create_project(
                args.input_file, export_scales=scales, processing_mode=args.mode
            )
            project = service.wait(project.id)
        except ExportError as e:
            logger.error(str(e))
            return 1
        finally:
            service.shutdown()
        if project.status != ProjectStatus.READY:
            logger.error("Processing of %s failed", args.input_file)
            return 1
        print(
            "Exported %d items to %s"
            % (len(store.list_layers(project.id)), config.processed_dir(project.id))
        )

    elif args.command == "show":
        try:
            document = open_document(args.input_file)
        except ExportError as e:
            logger.error(str(e))
            return 1
        width, height = document.header()
        print("%s (%d x %d)" % (args.input_file, width, height))
        _print_tree(document.tree())

    return None


if __name__ == "__main__":
    main()
