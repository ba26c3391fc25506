"""Application entry point with batch analysis and incremental raster updates."""

import datetime
import logging
import os
import sys
import time

# Ensure GUI config paths are writable before importing Kivy.
_APP_DIR = os.path.dirname(__file__)
if "KIVY_HOME" not in os.environ:
    os.environ["KIVY_HOME"] = os.path.join(_APP_DIR, ".kivy")
    os.makedirs(os.environ["KIVY_HOME"], exist_ok=True)
# Leave our own command line to us
os.environ.setdefault("KIVY_NO_ARGS", "1")

from kivy.app import App
from kivy.clock import Clock

from config import LOG_LEVEL, SIM_NUM_FRAMES, UI_UPDATE_RATE_HZ
from errors import DegenerateRangeError, PipelineError
from pipeline.session import AnalysisSession
from pipeline.types import BatchComplete, FrameFailure, NormalizationParams, PartialResult
from simulator import Simulator
from ui import MainScreen


class FrameViewerApp(App):
    """Kivy app rendering single frames or live composites of frame batches."""

    def __init__(self, sources=None, **kwargs):
        super().__init__(**kwargs)
        self.sources = list(sources or [])

    def build(self):
        self.session = AnalysisSession()
        self.batch_start_time = None
        self._last_error_log_time = 0.0

        self.screen = MainScreen(
            on_run=self.start_analysis,
            on_params_changed=self.change_params,
        )
        self.screen.set_params(self.session.params.transform, self.session.params.row_duplication)

        Clock.schedule_once(lambda _dt: self.start_analysis(), 0)
        Clock.schedule_interval(self._update_ui, 1.0 / UI_UPDATE_RATE_HZ)
        return self.screen

    def _timestamp(self) -> str:
        """Get current time as formatted string."""
        return datetime.datetime.now().strftime("%H:%M:%S")

    def _elapsed_time_str(self) -> str:
        """Get elapsed time since batch start as HH:MM:SS."""
        if self.batch_start_time is None:
            return "--:--:--"
        elapsed = time.time() - self.batch_start_time
        hours = int(elapsed // 3600)
        minutes = int((elapsed % 3600) // 60)
        seconds = int(elapsed % 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def start_analysis(self):
        """Render the single source, or (re)start a batch over all of them."""
        sources = self.sources
        if not sources:
            self.screen.append_log(f"[{self._timestamp()}] No files given, simulating {SIM_NUM_FRAMES} frames\n")
            sources = Simulator().generate_batch(SIM_NUM_FRAMES)

        try:
            if len(sources) == 1:
                raster = self.session.render_single(sources[0])
                self.screen.show_raster(raster)
                self.screen.set_status("idle", "Single frame", f"{raster.width} x {raster.height} px")
                self.screen.append_log(f"[{self._timestamp()}] Rendered {raster.width}x{raster.height} frame\n")
                return

            run = self.session.start_batch(sources)
        except (PipelineError, OSError, ValueError) as exc:
            self.screen.set_status("warn", "Error", str(exc))
            self.screen.append_log(f"[{self._timestamp()}] {exc}\n")
            return

        self.batch_start_time = time.time()
        self.screen.show_raster(None)
        self.screen.set_status("busy", "Processing", f"{run.frame_count} frames on {run.pool_size} units")
        self.screen.append_log(
            f"[{self._timestamp()}] Batch {run.batch_id} started "
            f"({run.frame_count} frames, {run.pool_size} units)\n"
        )

    def change_params(self, transform: str, row_duplication: int):
        previous = self.session.params
        try:
            raster = self.session.set_normalization_params(NormalizationParams(transform, row_duplication))
        except DegenerateRangeError as exc:
            self.screen.append_log(f"[{self._timestamp()}] {exc}\n")
            self.screen.set_params(previous.transform, previous.row_duplication)
            return

        if raster is not None:
            self.screen.show_raster(raster)
            self.screen.append_log(f"[{self._timestamp()}] Re-normalized: {transform}, rows x{row_duplication}\n")

    def _update_ui(self, dt):
        """Poll for new results and refresh the raster."""
        run = self.session.run
        if run is None or self.session.is_complete:
            return

        try:
            events = self.session.poll()
        except PipelineError as exc:
            self.screen.set_status("warn", "Aborted", str(exc))
            self.screen.append_log(f"[{self._timestamp()}] Batch aborted: {exc}\n")
            self.screen.show_raster(self.session.raster)
            return

        changed = False
        for event in events:
            if isinstance(event, PartialResult):
                changed = True
            elif isinstance(event, FrameFailure):
                self._log_error_throttled(f"[{self._timestamp()}] Skipped {event.error}\n")
            elif isinstance(event, BatchComplete):
                changed = True
                self._on_batch_complete(event)

        if changed:
            self.screen.show_raster(self.session.raster)

        buffer = self.session.buffer
        self.screen.update_batch_info(
            batch_id=run.batch_id,
            elapsed_str=self._elapsed_time_str(),
            settled=buffer.settled,
            frame_count=buffer.frame_count,
            failed=buffer.failed,
        )

    def _on_batch_complete(self, complete: BatchComplete):
        params = self.session.params
        self.screen.set_params(params.transform, params.row_duplication)
        if complete.fallback_from:
            self.screen.append_log(
                f"[{self._timestamp()}] {complete.fallback_from} not applicable to this batch, using {complete.transform}\n"
            )
        if complete.raster is None:
            self.screen.set_status("warn", "Failed", "No frame in the batch could be decoded")
            return

        buffer = self.session.buffer
        values = buffer.rows()[buffer.populated_mask()]
        self.screen.set_status(
            "idle",
            "Complete",
            f"{complete.completed} frames, {complete.failed} skipped in {self._elapsed_time_str()}",
        )
        self.screen.update_readouts(
            [
                f"Frames decoded: {complete.completed} / {complete.frame_count}",
                f"Columns: {buffer.columns}",
                f"Min: {values.min():.3f}",
                f"Max: {values.max():.3f}",
                f"Composite: {complete.raster.width} x {complete.raster.height} px",
            ]
        )
        self.screen.append_log(f"[{self._timestamp()}] Batch complete ({self._elapsed_time_str()})\n")

    def _log_error_throttled(self, text: str, interval_s: float = 2.0):
        """Log repeated frame errors with basic time-based throttling."""
        now = time.time()
        if now - self._last_error_log_time >= interval_s:
            self._last_error_log_time = now
            self.screen.append_log(text)

    def on_stop(self):
        """Clean up when app closes."""
        summary = self.session.runtime.stop()
        logging.info(
            f"Viewer closed: {summary.submitted_batches} batches, "
            f"{summary.delivered_frames} frames delivered, {summary.failed_frames} skipped"
        )


if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    FrameViewerApp(sources=sys.argv[1:]).run()
