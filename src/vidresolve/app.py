"""Main entry point for vidresolve."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .core import CoreError, Quality, StreamFilter, VideoClient, choose_format
from .core.client import ResolveOptions
from .core.models import Format
from .core.resolver import filter_formats
from .utils import Config, log_error, setup_logging
from .version import __version__

logger = logging.getLogger(__name__)


def _size(fmt: Format) -> str:
    if not fmt.content_length:
        return "-"
    return f"{fmt.content_length / (1024 * 1024):.1f}MiB"


def format_line(fmt: Format) -> str:
    quality = fmt.quality_label or (f"{fmt.audio_sample_rate}Hz" if fmt.audio_sample_rate else "-")
    flags = " live" if fmt.is_live else ""
    flags += " hls" if fmt.is_hls else ""
    flags += " dash" if fmt.is_dash else ""
    return (f"{fmt.itag:>4}  {fmt.kind.value:<10} {fmt.container or '-':<5} {quality:<9} "
            f"{fmt.bitrate // 1000:>6}k  {_size(fmt):>9}{flags}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidresolve", description="List the downloadable formats of a video.")
    parser.add_argument("video", help="video URL or 11 character id")
    parser.add_argument("--best", choices=[q.value for q in Quality],
                        help="print only the format chosen for this quality")
    parser.add_argument("--filter", choices=[f.value for f in StreamFilter], default=StreamFilter.ANY.value)
    parser.add_argument("--no-manifests", action="store_true", help="skip HLS/DASH manifest variants")
    parser.add_argument("--config", help="settings file (default ~/vidresolve_settings.json)")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def run(args: argparse.Namespace) -> List[Format]:
    config = Config(args.config) if args.config else Config()
    async with VideoClient(config=config) as client:
        resolution = await client.resolve(args.video, ResolveOptions(include_manifests=not args.no_manifests))
    if args.best:
        return [choose_format(resolution, Quality(args.best), StreamFilter(args.filter))]
    return filter_formats(resolution, StreamFilter(args.filter))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        logger.info(f"Starting vidresolve v{__version__}")
        formats = asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except CoreError as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        log_error(f"Resolving {args.video} failed", e)
        print(f"error: {e}", file=sys.stderr)
        return 1

    for fmt in formats:
        print(format_line(fmt))
    return 0


if __name__ == "__main__":
    sys.exit(main())
