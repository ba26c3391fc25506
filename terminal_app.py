"""
Terminal-only application entry point.

Runs the batch pipeline over detector frames (files or simulated) and prints
per-frame progress plus a summary of the final composite.
"""

import argparse
import datetime
import logging
import sys
import time
from typing import List, Optional

from config import (
    DEFAULT_ROW_DUPLICATION,
    DEFAULT_TRANSFORM,
    LOG_LEVEL,
    MAX_WORKERS,
    SIM_FRAME_FORMAT,
    SIM_FRAME_FORMATS,
    SIM_FRAME_SIZE,
    TRANSFORMS,
)

from errors import PipelineError
from pipeline.session import AnalysisSession
from pipeline.types import BatchComplete, FrameFailure, NormalizationParams, PartialResult
from simulator import Simulator


class FrameTerminalApp:
    def __init__(
        self,
        transform: str = DEFAULT_TRANSFORM,
        row_duplication: int = DEFAULT_ROW_DUPLICATION,
        max_workers: Optional[int] = MAX_WORKERS,
    ):
        self.session = AnalysisSession(
            params=NormalizationParams(transform, row_duplication),
            max_workers=max_workers,
        )
        self.start_time = None

    def render(self, source) -> None:
        raster = self.session.render_single(source)
        print(f"Rendered single frame: {raster.width} x {raster.height} px")

    def run(self, sources: List) -> BatchComplete:
        print("=== Detector Batch Terminal Mode ===")
        self.start_time = time.time()

        stream = self.session.analyze_batch(sources)
        run = self.session.run
        print(f"Processing {run.frame_count} frames on {run.pool_size} units...\n")

        complete = None
        for event in stream:
            if isinstance(event, PartialResult):
                self._print_result(event)
            elif isinstance(event, FrameFailure):
                self._print_failure(event)
            elif isinstance(event, BatchComplete):
                complete = event

        self._print_summary(complete)
        return complete

    def _timestamp(self) -> str:
        return datetime.datetime.now().strftime("%H:%M:%S")

    def _print_result(self, result: PartialResult):
        print(
            f"[{self._timestamp()}] Frame {result.index:4d} | unit {result.unit} | "
            f"width {result.width} | peak {result.raw.max():.1f}"
        )

    def _print_failure(self, failure: FrameFailure):
        print(f"[{self._timestamp()}] Frame {failure.index:4d} | unit {failure.unit} | SKIPPED: {failure.error}")

    def _print_summary(self, complete: BatchComplete):
        elapsed = time.time() - self.start_time
        print(f"\nBatch duration: {elapsed:.2f} seconds")
        print(f"Frames: {complete.completed} decoded, {complete.failed} skipped of {complete.frame_count}")

        buffer = self.session.buffer
        if complete.raster is None:
            print("No composite: nothing could be decoded")
            return

        if complete.fallback_from:
            print(f"Note: {complete.fallback_from} transform not applicable, used {complete.transform}")
        values = buffer.rows()[buffer.populated_mask()]
        print(f"Statistic range: min={values.min():.3f} max={values.max():.3f}")
        print(
            f"Composite: {complete.raster.width} x {complete.raster.height} px "
            f"({complete.transform}, rows x{self.session.params.row_duplication})"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Composite view of detector frame batches")
    parser.add_argument("paths", nargs="*", help=".cbf or .npy detector frames")
    parser.add_argument("--simulate", type=int, default=0, metavar="N", help="use N simulated frames instead of files")
    parser.add_argument("--frame-size", type=int, default=SIM_FRAME_SIZE, help="simulated frame size in pixels")
    parser.add_argument("--sim-format", choices=SIM_FRAME_FORMATS, default=SIM_FRAME_FORMAT, help="encoding of simulated frames")
    parser.add_argument("--transform", choices=TRANSFORMS, default=DEFAULT_TRANSFORM)
    parser.add_argument("--row-duplication", type=int, default=DEFAULT_ROW_DUPLICATION)
    parser.add_argument("--workers", type=int, default=MAX_WORKERS, help="cap on concurrent units")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")

    if args.simulate:
        sources = Simulator(frame_size=args.frame_size, frame_format=args.sim_format).generate_batch(args.simulate)
    else:
        sources = args.paths

    try:
        app = FrameTerminalApp(args.transform, args.row_duplication, args.workers)
        if len(sources) == 1:
            app.render(sources[0])
        else:
            app.run(sources)
    except (PipelineError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
