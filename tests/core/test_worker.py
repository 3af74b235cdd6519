"""Tests for the QTimer-driven bake worker."""

import pytest

pytest.importorskip("PySide6")

from PySide6.QtCore import QCoreApplication  # noqa: E402

from fur_mask_baker.core.bake_job import BakeJob, BakeState  # noqa: E402
from fur_mask_baker.core.mesh_data import MeshValidationError  # noqa: E402
from fur_mask_baker.core.settings import BakeSettings  # noqa: E402
from fur_mask_baker.core.worker import BakeWorker  # noqa: E402


@pytest.fixture(scope="module")
def qapp():
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    return app


def _settings():
    return BakeSettings(texture_size=8, gamma=1.0, smoothing_iterations=1, edge_padding=0)


def _drive(worker, limit=1000):
    for _ in range(limit):
        if not worker.is_running:
            return
        worker._tick()
    raise AssertionError("worker did not stop")


def test_worker_finishes(qapp, unit_square):
    worker = BakeWorker(BakeJob(unit_square, _settings()), steps_per_tick=2)
    stages, progress, results = [], [], []
    worker.stage_started.connect(stages.append)
    worker.progress.connect(lambda message, fraction: progress.append(fraction))
    worker.finished.connect(results.append)

    worker.start()
    assert worker.is_running
    _drive(worker)

    assert stages[0] == BakeState.DISTANCES
    assert stages[-1] == BakeState.FINISHED
    assert progress[-1] == 1.0
    assert len(results) == 1
    assert results[0] is worker.job.result


def test_worker_cancel(qapp, grid_mesh):
    worker = BakeWorker(BakeJob(grid_mesh, _settings()))
    reasons = []
    worker.cancelled.connect(reasons.append)
    worker.start()
    worker._tick()
    worker.cancel()
    _drive(worker)
    assert reasons == ["Cancelled by user"]
    assert worker.job.state == BakeState.CANCELLED
    assert worker.job.result is None


def test_worker_reports_failure(qapp, unit_square, failing_collider):
    worker = BakeWorker(BakeJob(unit_square, _settings(), collider=failing_collider))
    reasons = []
    worker.cancelled.connect(reasons.append)
    worker.start()
    _drive(worker)
    assert reasons == ["Failed: collider exploded"]


def test_validation_error_raised_by_start(qapp, make_snapshot):
    snap = make_snapshot([(0, 0, 0), (1, 0, 0), (0, 1, 0)], [(0, 0)], [[[0, 1, 2]]])
    worker = BakeWorker(BakeJob(snap, _settings()))
    with pytest.raises(MeshValidationError):
        worker.start()
    assert not worker.is_running
