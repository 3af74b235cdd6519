"""
Diffusion smoothing of the per-vertex field.

Ray-cast clearance is noisy from vertex to vertex, which shows up as speckle
once rasterized. The smoother runs Jacobi iterations of neighbour averaging
over the vertex adjacency graph:

    next[v] = (cur[v] + sum(cur[u] for u in neighbours(v))) / (1 + degree(v))

Anchored vertices copy their value unchanged, so UV-island anchors stay
exactly 0. Reads only ever come from the previous iteration's buffer (pure
Jacobi): results do not depend on the order vertices are visited in, and a
batch can stop at any row without changing the outcome.

The iteration stops early once the largest per-vertex change in a full sweep
drops below CONVERGENCE_THRESHOLD.

DiffusionSmoother is resumable: step() processes one batch of rows of the
current sweep and returns, so the bake job can interleave progress reports
and cancellation checks between batches.
"""

import logging

import numpy as np
import scipy.sparse as sp

from fur_mask_baker.core.adjacency import adjacency_matrix

logger = logging.getLogger(__name__)


# Largest per-vertex change of a sweep below which smoothing stops early.
CONVERGENCE_THRESHOLD = 1e-4

# Rows per batch when run() is called without an explicit batch size.
DEFAULT_SMOOTHING_BATCH = 4096


class DiffusionSmoother:
    """
    Resumable Jacobi smoother.

    Args:
        values:       (N,) initial field. Not modified.
        adjacency:    Vertex adjacency list or an (N, N) scipy sparse matrix.
        anchor_flags: Optional (N,) bool; flagged vertices never change.
        iterations:   Maximum number of sweeps.
        threshold:    Early-exit threshold on the per-sweep max change.
    """

    def __init__(self, values, adjacency, anchor_flags=None, iterations=1,
                 threshold=CONVERGENCE_THRESHOLD):
        self.current = np.array(values, dtype=np.float64, copy=True)
        self.next = self.current.copy()
        n = len(self.current)

        if sp.issparse(adjacency):
            self.matrix = sp.csr_matrix(adjacency)
        else:
            self.matrix = adjacency_matrix(adjacency)
        if self.matrix.shape != (n, n):
            raise ValueError(
                f"Adjacency shape {self.matrix.shape} does not match field length {n}"
            )

        self.degree = np.diff(self.matrix.indptr).astype(np.float64)
        self.anchor_flags = (
            np.zeros(n, dtype=bool) if anchor_flags is None
            else np.asarray(anchor_flags, dtype=bool)
        )
        self.iterations = max(0, int(iterations))
        self.threshold = threshold

        self.iteration = 0
        self.cursor = 0
        self.max_change = 0.0
        self.converged = False

    @property
    def values(self):
        """The most recent complete sweep (the initial field before any)."""
        return self.current

    @property
    def done(self) -> bool:
        return self.converged or self.iteration >= self.iterations or len(self.current) == 0

    @property
    def progress(self) -> float:
        """Fraction of the scheduled sweeps completed, in [0, 1]."""
        if self.done:
            return 1.0
        n = len(self.current)
        return (self.iteration + self.cursor / n) / self.iterations

    def step(self, batch_size):
        """
        Smooth the next `batch_size` rows of the current sweep.

        Returns:
            Number of rows processed (0 once done).
        """
        if self.done:
            return 0

        n = len(self.current)
        start = self.cursor
        stop = min(n, start + max(1, int(batch_size)))

        cur = self.current
        neighbour_sum = self.matrix[start:stop] @ cur
        smoothed = (cur[start:stop] + neighbour_sum) / (1.0 + self.degree[start:stop])
        anchored = self.anchor_flags[start:stop]
        smoothed[anchored] = cur[start:stop][anchored]

        self.next[start:stop] = smoothed
        if stop > start:
            self.max_change = max(self.max_change, float(np.max(np.abs(smoothed - cur[start:stop]))))
        self.cursor = stop

        if self.cursor >= n:
            self._finish_sweep()
        return stop - start

    def _finish_sweep(self):
        self.current, self.next = self.next, self.current
        self.iteration += 1
        self.cursor = 0
        logger.debug("Smoothing sweep %d: max change %.6f", self.iteration, self.max_change)
        if self.max_change < self.threshold:
            self.converged = True
            logger.debug("Smoothing converged after %d sweeps", self.iteration)
        self.max_change = 0.0

    def run(self, batch_size=DEFAULT_SMOOTHING_BATCH, should_cancel=None):
        """
        Step until done.

        Args:
            batch_size:    Rows per step.
            should_cancel: Optional callable polled between batches; returning
                           True stops immediately.

        Returns:
            True if smoothing completed, False if it was cancelled.
        """
        while not self.done:
            if should_cancel is not None and should_cancel():
                logger.info("Smoothing cancelled at sweep %d", self.iteration)
                return False
            self.step(batch_size)
        return True


def smooth_field(values, adjacency, anchor_flags=None, iterations=1,
                 threshold=CONVERGENCE_THRESHOLD):
    """Smooth a field in one call and return the smoothed copy."""
    smoother = DiffusionSmoother(values, adjacency, anchor_flags, iterations, threshold)
    smoother.run()
    return smoother.values
