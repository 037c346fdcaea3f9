"""
SocialMark - Command Line Entry Point
=====================================
Watermarks a generated image and writes the composited result.

Usage:
    python main.py IMAGE [--text @Brand] [--opacity 0.6] [--hide]
                         [--format png|jpg] [--output PATH]

IMAGE may be a file path, an http(s) URL or a data URI.

Architecture:
    - Model: socialmark/core/ (pure algorithms)
    - Scheduling: socialmark/workers/ (orchestrator)
    - Controller: This file (argument handling and result export)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from socialmark.core import (
    CompositionError, CompositorConfig, ImageFormat, WatermarkSpec, WatermarkStyle,
    save_composited
)
from socialmark.logs import RecentLogHandler, configure_logging
from socialmark.workers import CompositingOrchestrator, CompositionState

logger = logging.getLogger("socialmark.cli")


class CompositionController:
    """
    Connects command line arguments to the orchestrator.

    Responsibilities:
    - Validate user input before processing
    - Run one composition and export the published result
    - Report structured errors
    """

    def __init__(self, args: argparse.Namespace, recent_logs: RecentLogHandler):
        self.args = args
        self.recent_logs = recent_logs
        self.published: List[str] = []
        self.errors: List[CompositionError] = []

    def validate(self) -> Optional[str]:
        """Return an error message if the arguments cannot be processed."""
        if not 0.0 <= self.args.opacity <= 1.0:
            return "Opacity must be between 0 and 1"
        try:
            ImageFormat.from_value(self.args.format)
        except CompositionError as exc:
            return exc.detail
        return None

    def _on_processed(self, result_ref: str):
        self.published.append(result_ref)

    def _on_error(self, error: CompositionError):
        self.errors.append(error)

    def build_config(self) -> CompositorConfig:
        style = WatermarkStyle(font_path=self.args.font)
        return CompositorConfig(style=style, output_format=self.args.format)

    async def run(self) -> int:
        orchestrator = CompositingOrchestrator(
            sink=self._on_processed,
            config=self.build_config(),
            on_error=self._on_error,
        )
        spec = WatermarkSpec(text=self.args.text, opacity=self.args.opacity, enabled=not self.args.hide)
        await orchestrator.update(self.args.image, spec)

        if orchestrator.state is not CompositionState.PUBLISHED or orchestrator.last_result is None:
            for error in self.errors:
                print(f"Error [{error.stage}/{error.kind.value}]: {error.detail}", file=sys.stderr)
            return 1

        destination = Path(self.args.output) if self.args.output else Path.cwd()
        path = save_composited(orchestrator.last_result, destination)
        print(f"Saved {path}")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Add a tiled text watermark to an image.")
    parser.add_argument("image", help="Image path, http(s) URL or data URI")
    parser.add_argument("--text", default="@SocialGenAI", help="Watermark text")
    parser.add_argument("--opacity", type=float, default=0.6, help="Watermark opacity (0-1)")
    parser.add_argument("--hide", action="store_true", help="Skip the watermark and re-encode only")
    parser.add_argument("--format", default="png", help="Output format: png or jpg")
    parser.add_argument("--output", help="Output file or directory (default: current directory)")
    parser.add_argument("--font", help="Path to a TTF/OTF font")
    parser.add_argument("--debug", action="store_true", help="Print the recent log lines")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point."""
    args = build_parser().parse_args(argv)

    recent_logs = RecentLogHandler()
    configure_logging(logging.DEBUG if args.debug else logging.INFO, recent_logs)

    controller = CompositionController(args, recent_logs)
    error = controller.validate()
    if error:
        print(f"Configuration error: {error}", file=sys.stderr)
        return 2

    status = asyncio.run(controller.run())

    if args.debug:
        for line in recent_logs.messages():
            print(f"- {line}")
    return status


if __name__ == "__main__":
    sys.exit(main())
