"""
Cooperative bake job for Fur Mask Baker.

A bake can take minutes on a dense avatar, yet the host (an editor UI thread,
a Qt event loop, a CLI loop) must stay responsive and able to cancel. BakeJob
is an explicit state machine: every call to step() performs one bounded unit
of work (one vertex batch, one smoothing batch, one triangle batch, or one
single-pass stage) and returns a BakeStatus.

    IDLE → DISTANCES → UV_ANCHORS → SMOOTHING → GAMMA → RASTERIZING
         → MERGING → FINISHED
    any non-terminal state → CANCELLED

Cancellation:
    - cancel() from the host, or
    - the progress sink returning True at a batch boundary, or
    - an unexpected exception inside a step (logged with traceback and kept on
      job.error).
    Every in-flight buffer is dropped on cancellation; a cancelled job never
    produces textures and cannot be resumed. Start a new job instead.

Validation errors (MeshValidationError, SettingsError) are raised by start(),
before any work is done.

The job holds no locks. The caller must not run two jobs for the same output
target at once.
"""

import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import Callable

import numpy as np

from fur_mask_baker.core.adjacency import adjacency_matrix, build_vertex_adjacency
from fur_mask_baker.core.distance_field import (
    DistanceFieldSolver,
    apply_gamma,
    apply_uv_anchors,
)
from fur_mask_baker.core.mesh_data import subdivide_snapshot, validate_snapshot
from fur_mask_baker.core.pipeline import (
    PROGRESS_TITLE,
    STAGE_DISPLAY_NAMES,
    STAGE_PROGRESS_RANGES,
    TERMINAL_STAGES,
    BakeStage,
)
from fur_mask_baker.core.settings import BakeSettings
from fur_mask_baker.core.smoothing import DiffusionSmoother
from fur_mask_baker.core.texture_baker import (
    MaterialBuffer,
    buffer_to_image,
    merge_buffers,
    mask_precedence,
    pad_buffer,
    padding_for_size,
    rasterize_triangles,
)
from fur_mask_baker.core.uv_islands import UVIslandCache

logger = logging.getLogger(__name__)

# Job states are the pipeline stage strings.
BakeState = BakeStage


# ---------------------------------------------------------------------------
# Batch sizing
# ---------------------------------------------------------------------------

# Vertices processed between progress reports, before scaling by mesh size.
BASE_PROGRESS_INTERVAL = 50

# Anchor count above which a collider bake is treated as complex.
COMPLEX_ANCHOR_COUNT = 5


def adaptive_batch_size(vertex_count, triangle_count, has_collider=False, anchor_count=0):
    """
    Vertices per step when the settings leave batch_size unset.

    Starts from 1/25th of the mesh, shrinks it for dense topology and for
    collider bakes with many anchors, then clamps to
    [max(50, n/100), min(1000, n/5)].
    """
    n = max(0, int(vertex_count))
    size = n / 25.0

    ratio = triangle_count / n if n else 0.0
    if ratio > 2.5:
        size *= 0.6
    elif ratio > 1.8:
        size *= 0.8

    if has_collider and anchor_count > COMPLEX_ANCHOR_COUNT:
        size *= 0.7

    lo = max(50, n // 100)
    hi = min(1000, n // 5)
    return max(1, min(max(int(size), lo), hi))


def progress_interval(vertex_count):
    """Vertices between progress reports: fewer reports on large meshes."""
    if vertex_count > 50_000:
        return BASE_PROGRESS_INTERVAL * 4
    if vertex_count > 20_000:
        return BASE_PROGRESS_INTERVAL * 2
    if vertex_count < 5_000:
        return BASE_PROGRESS_INTERVAL // 2
    return BASE_PROGRESS_INTERVAL


# ---------------------------------------------------------------------------
# Status and result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BakeStatus:
    """Snapshot of a job after one step."""
    state: str
    progress: float
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STAGES

    @property
    def finished(self) -> bool:
        return self.state == BakeState.FINISHED

    @property
    def cancelled(self) -> bool:
        return self.state == BakeState.CANCELLED


@dataclass
class BakeResult:
    """Output of a finished bake."""
    buffers: dict                    # material -> MaterialBuffer (merged, padded)
    values: np.ndarray               # final per-vertex values
    anchor_flags: np.ndarray         # per-vertex anchor flags
    snapshot: object = None          # the (possibly subdivided) snapshot baked
    stats: dict = field(default_factory=dict)

    @property
    def materials(self):
        return list(self.buffers.keys())

    def images(self):
        """material -> 8-bit RGBA PIL Image."""
        return {name: buffer_to_image(buf) for name, buf in self.buffers.items()}


ProgressSink = Callable[[str, str, float], bool]


def _default_adjacency(snapshot):
    return adjacency_matrix(build_vertex_adjacency(snapshot.submeshes, snapshot.vertex_count))


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class BakeJob:
    """
    Resumable mask bake.

    Args:
        snapshot:           MeshSnapshot to bake.
        settings:           BakeSettings snapshot (clamped on start).
        collider:           Optional ExclusionCollider.
        bone_control:       Optional (N,) resolved bone control.
        direction_maps:     Optional {material: DirectionMap}.
        island_cache:       UVIslandCache shared with other jobs on the
                            same engine; a private one is made if omitted.
        adjacency_provider: Callable snapshot -> sparse vertex adjacency
                            matrix; the engine passes its cached lookup.
        progress_sink:      Optional (title, message, fraction) -> cancel.
        precedence:         Merge precedence for buffers sharing a material.
    """

    def __init__(self, snapshot, settings: BakeSettings | None = None, collider=None,
                 bone_control=None, direction_maps=None, island_cache=None,
                 adjacency_provider=None, progress_sink: ProgressSink | None = None,
                 precedence=mask_precedence):
        self.snapshot = snapshot
        self.settings = settings if settings is not None else BakeSettings()
        self.collider = collider
        self.bone_control = bone_control
        self.direction_maps = dict(direction_maps or {})
        self.island_cache = island_cache if island_cache is not None else UVIslandCache()
        self.adjacency_provider = adjacency_provider or _default_adjacency
        self.progress_sink = progress_sink
        self.precedence = precedence

        self.state = BakeState.IDLE
        self.progress = 0.0
        self.message = ""
        self.error = None
        self.result = None

        self.batch_size = 0
        self.report_interval = BASE_PROGRESS_INTERVAL
        self._reset_buffers()

    def _reset_buffers(self):
        self._solver = None
        self._field = None
        self._anchor_flags = None
        self._smoother = None
        self._cursor = 0
        self._since_report = 0
        self._submesh_order = []
        self._submesh_pos = 0
        self._raster_image = None
        self._raster_covered = None
        self._material_buffers = {}

    # -----------------------------------------------------------------------
    # Public control
    # -----------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STAGES

    def status(self) -> BakeStatus:
        return BakeStatus(self.state, self.progress, self.message)

    def start(self) -> BakeStatus:
        """
        Validate inputs and enter the first working stage.

        Raises:
            MeshValidationError: The snapshot violates a hard invariant.
            SettingsError:       The settings hold an unusable value.
            RuntimeError:        The job was already started.
        """
        if self.state != BakeState.IDLE:
            raise RuntimeError(f"Bake job already {self.state}; create a new job to bake again")

        settings = self.settings.clamped()
        invalid = validate_snapshot(self.snapshot)
        if invalid:
            logger.warning("Skipping %d triangles with out-of-range vertex indices", invalid)

        n = self.snapshot.vertex_count
        if self.bone_control is not None and len(self.bone_control) != n:
            raise ValueError(
                f"bone_control has {len(self.bone_control)} values for {n} vertices"
            )

        if settings.subdivision_iterations > 0:
            self.snapshot, self.bone_control = subdivide_snapshot(
                self.snapshot, settings.subdivision_iterations, self.bone_control,
            )
            n = self.snapshot.vertex_count

        self.settings = settings
        self.batch_size = settings.batch_size or adaptive_batch_size(
            n, self.snapshot.triangle_count,
            has_collider=self.collider is not None,
            anchor_count=len(settings.uv_island_anchors),
        )
        self.report_interval = progress_interval(n)
        self._solver = DistanceFieldSolver(
            self.snapshot,
            spheres=settings.spheres,
            bone_control=self.bone_control,
            collider=self.collider,
            max_distance=settings.max_distance,
            direction_maps=self.direction_maps,
        )

        logger.info(
            "Starting bake of %s: %s vertices, %s triangles, batch size %d",
            self.snapshot.mesh_id, f"{n:,}", f"{self.snapshot.triangle_count:,}", self.batch_size,
        )
        self._enter(BakeState.DISTANCES)
        return self.status()

    def cancel(self, reason="Cancelled") -> BakeStatus:
        """Abort the bake and drop every in-flight buffer."""
        if self.is_terminal:
            return self.status()
        logger.info("Bake of %s cancelled during %s: %s",
                    self.snapshot.mesh_id, STAGE_DISPLAY_NAMES[self.state], reason)
        self._reset_buffers()
        self.result = None
        self.state = BakeState.CANCELLED
        self.message = reason
        return self.status()

    def step(self) -> BakeStatus:
        """Run one bounded unit of work and report where the job stands."""
        if self.state == BakeState.IDLE:
            return self.start()
        if self.is_terminal:
            return self.status()

        handler = self._handlers()[self.state]
        try:
            handler()
        except Exception as e:
            logger.exception("Bake step failed during %s", STAGE_DISPLAY_NAMES[self.state])
            self.error = e
            return self.cancel(f"Failed: {e}")
        return self.status()

    def run(self) -> BakeStatus:
        """Step until the job reaches a terminal state."""
        status = self.step()
        while not status.is_terminal:
            status = self.step()
        return status

    # -----------------------------------------------------------------------
    # Stage plumbing
    # -----------------------------------------------------------------------

    def _handlers(self):
        return {
            BakeState.DISTANCES: self._step_distances,
            BakeState.UV_ANCHORS: self._step_uv_anchors,
            BakeState.SMOOTHING: self._step_smoothing,
            BakeState.GAMMA: self._step_gamma,
            BakeState.RASTERIZING: self._step_rasterizing,
            BakeState.MERGING: self._step_merging,
        }

    def _enter(self, state):
        logger.info("Bake stage: %s", STAGE_DISPLAY_NAMES[state])
        self.state = state
        self._set_progress(0.0, STAGE_DISPLAY_NAMES[state])

    def _set_progress(self, stage_fraction, message):
        lo, hi = STAGE_PROGRESS_RANGES.get(self.state, (1.0, 1.0))
        self.progress = lo + (hi - lo) * min(1.0, max(0.0, stage_fraction))
        self.message = message

    def _report(self, force=False):
        """Send progress to the sink; cancel if it asks to."""
        if self.progress_sink is None:
            return False
        if not force and self._since_report < self.report_interval:
            return False
        self._since_report = 0
        if self.progress_sink(PROGRESS_TITLE, self.message, self.progress):
            self.cancel("Cancelled by user")
            return True
        return False

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    def _step_distances(self):
        n = self._solver.vertex_count
        stop = min(n, self._cursor + self.batch_size)
        self._solver.solve_range(self._cursor, stop)
        self._since_report += stop - self._cursor
        self._cursor = stop

        self._set_progress(stop / n if n else 1.0,
                           f"{STAGE_DISPLAY_NAMES[self.state]} ({stop:,}/{n:,})")
        done = stop >= n
        if self._report(force=done) or not done:
            return

        self._field = self._solver.values.copy()
        logger.info("Distance field complete: %s rays cast", f"{self._solver.rays_cast:,}")
        self._solver = None
        self._cursor = 0
        self._enter(BakeState.UV_ANCHORS)

    def _step_uv_anchors(self):
        self._anchor_flags = apply_uv_anchors(
            self._field, self.snapshot, self.settings.uv_island_anchors,
            self.island_cache, self.settings.uv_threshold,
        )
        self._set_progress(1.0, STAGE_DISPLAY_NAMES[self.state])
        if self._report(force=True):
            return

        self._smoother = DiffusionSmoother(
            self._field,
            self.adjacency_provider(self.snapshot),
            self._anchor_flags,
            self.settings.smoothing_iterations,
        )
        self._enter(BakeState.SMOOTHING)

    def _step_smoothing(self):
        smoother = self._smoother
        processed = smoother.step(self.batch_size)
        self._since_report += processed
        self._set_progress(
            smoother.progress,
            f"{STAGE_DISPLAY_NAMES[self.state]} ({smoother.iteration}/{smoother.iterations} iterations)",
        )
        if self._report(force=smoother.done) or not smoother.done:
            return

        self._field = smoother.values
        self._smoother = None
        self._enter(BakeState.GAMMA)

    def _step_gamma(self):
        self._field = apply_gamma(self._field, self.settings.gamma)
        self._set_progress(1.0, STAGE_DISPLAY_NAMES[self.state])
        if self._report(force=True):
            return

        self._submesh_order = list(range(len(self.snapshot.submeshes)))
        self._submesh_pos = 0
        self._cursor = 0
        self._enter(BakeState.RASTERIZING)

    def _step_rasterizing(self):
        size = self.settings.texture_size
        total = len(self._submesh_order)
        if self._submesh_pos >= total:
            self._enter(BakeState.MERGING)
            return

        sub = self.snapshot.submeshes[self._submesh_order[self._submesh_pos]]
        if self._raster_image is None:
            self._raster_image = np.zeros((size, size, 1), dtype=np.float32)
            self._raster_covered = np.zeros((size, size), dtype=bool)

        stop = min(sub.triangle_count, self._cursor + self.batch_size)
        rasterize_triangles(
            self.snapshot.uvs, sub.triangles[self._cursor:stop], self._field, size,
            img=self._raster_image, covered=self._raster_covered,
        )
        self._cursor = stop

        if stop >= sub.triangle_count:
            buf = MaterialBuffer.from_values(
                sub.material, self._raster_image, self._raster_covered,
                self.settings.transparent_mode,
            )
            self._material_buffers.setdefault(sub.material, []).append(buf)
            self._raster_image = None
            self._raster_covered = None
            self._cursor = 0
            self._submesh_pos += 1

        self._set_progress(
            self._submesh_pos / total if total else 1.0,
            f"{STAGE_DISPLAY_NAMES[self.state]} {sub.material} ({self._submesh_pos}/{total})",
        )
        done = self._submesh_pos >= total
        if self._report(force=True) or not done:
            return
        self._enter(BakeState.MERGING)

    def _step_merging(self):
        radius = self.settings.edge_padding
        if radius is None:
            radius = padding_for_size(self.settings.texture_size)

        merged = {}
        for material, buffers in self._material_buffers.items():
            buf = reduce(lambda a, b: merge_buffers(a, b, self.precedence), buffers)
            merged[material] = pad_buffer(buf, radius)
            logger.debug("Merged %d buffer(s) for material %s", len(buffers), material)

        self._set_progress(1.0, STAGE_DISPLAY_NAMES[self.state])
        if self._report(force=True):
            return

        self.result = BakeResult(
            buffers=merged,
            values=self._field,
            anchor_flags=self._anchor_flags,
            snapshot=self.snapshot,
            stats={
                "vertices": self.snapshot.vertex_count,
                "triangles": self.snapshot.triangle_count,
                "anchored_vertices": int(np.count_nonzero(self._anchor_flags)),
                "padding": radius,
            },
        )
        self._material_buffers = {}
        self.state = BakeState.FINISHED
        self.progress = 1.0
        self.message = f"Baked {len(merged)} texture(s)"
        logger.info("Bake of %s finished: %s", self.snapshot.mesh_id, ", ".join(merged) or "no materials")
