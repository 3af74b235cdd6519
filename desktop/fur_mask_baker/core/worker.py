"""
Qt host driver for Fur Mask Baker.

BakeWorker drives a BakeJob from the Qt event loop. A zero-interval QTimer
calls job.step() once per timeout, so one bounded unit of work runs between
event-loop iterations and the UI never freezes. Everything happens on the
thread that owns the worker; no QThread, lock or cross-thread marshalling is
needed because the job itself is cooperative.

The worker receives a ready BakeJob via constructor injection rather than
building one, which keeps engine and cache ownership in the application
layer and lets tests drive the worker with any job.

Signals:
    stage_started(str)  — stage constant, emitted when the job enters a stage
    progress(str, float) — (message, overall fraction in [0, 1])
    finished(object)    — BakeResult, once the job reaches FINISHED
    cancelled(str)      — reason, once the job reaches CANCELLED
"""

import logging

from PySide6.QtCore import QObject, QTimer, Signal

from fur_mask_baker.core.bake_job import BakeJob, BakeState

logger = logging.getLogger(__name__)


class BakeWorker(QObject):
    """
    Steps a BakeJob on a QTimer until it reaches a terminal state.

    Args:
        job:            The BakeJob to run. It may be IDLE or already started.
        steps_per_tick: job.step() calls per timer tick.
        parent:         Optional QObject parent.
    """

    stage_started = Signal(str)
    progress = Signal(str, float)
    finished = Signal(object)
    cancelled = Signal(str)

    def __init__(self, job: BakeJob, steps_per_tick=1, parent=None):
        super().__init__(parent)
        self._job = job
        self._steps_per_tick = max(1, int(steps_per_tick))
        self._last_state = job.state

        # Checked on the next tick; the job is never touched mid-step.
        self._cancelled = False

        self._timer = QTimer(self)
        self._timer.setInterval(0)
        self._timer.timeout.connect(self._tick)

    @property
    def job(self) -> BakeJob:
        return self._job

    @property
    def is_running(self) -> bool:
        return self._timer.isActive()

    def start(self):
        """
        Validate the job and begin ticking.

        Validation errors from BakeJob.start() propagate to the caller before
        the timer is started.
        """
        if self._job.state == BakeState.IDLE:
            self._job.start()
        self._emit_stage_change()
        self._timer.start()

    def cancel(self):
        """Request cancellation. Takes effect on the next tick."""
        self._cancelled = True

    def _tick(self):
        if self._cancelled:
            self._job.cancel("Cancelled by user")

        status = self._job.status()
        for _ in range(self._steps_per_tick):
            if status.is_terminal:
                break
            status = self._job.step()
            self._emit_stage_change()

        self.progress.emit(status.message, status.progress)

        if not status.is_terminal:
            return

        self._timer.stop()
        if status.finished:
            self.finished.emit(self._job.result)
        else:
            logger.info("Bake worker stopped: %s", status.message)
            self.cancelled.emit(status.message)

    def _emit_stage_change(self):
        state = self._job.state
        if state != self._last_state:
            self._last_state = state
            self.stage_started.emit(state)
