"""
Mask baking pipeline — stage definitions.

This module defines the discrete stages a bake walks through. Each stage is
a distinct, logged step that the host can monitor through the progress sink.

The bake follows this sequence:
    1. Computing Distances — per-vertex sphere/bone/ray-cast field, processed
       in vertex batches so the host never blocks for long.
    2. Applying UV Anchors — a single pass forcing every vertex of every
       anchored UV island to zero.
    3. Smoothing — Jacobi neighbour averaging over the vertex adjacency
       graph, processed in row batches per iteration.
    4. Gamma Correcting — a single pass raising the clamped field to the
       configured gamma.
    5. Rasterizing — per-submesh triangle rasterization into pixel buffers.
    6. Merging — combining submesh buffers that share a material and padding
       UV island borders.

The stage constants defined here are used by the bake job, the Qt worker and
the command-line runner to report progress consistently.
"""


class BakeStage:
    """
    String constants identifying each bake stage.

    The two terminal states (FINISHED, CANCELLED) and the initial IDLE state
    live here too so a job's state is always one of these strings.
    """
    IDLE = "idle"
    DISTANCES = "computing_distances"
    UV_ANCHORS = "applying_uv_anchors"
    SMOOTHING = "smoothing"
    GAMMA = "gamma_correcting"
    RASTERIZING = "rasterizing"
    MERGING = "merging"
    FINISHED = "finished"
    CANCELLED = "cancelled"


# Ordered list of working stages: the sequence a bake executes between
# IDLE and FINISHED.
STAGE_ORDER = [
    BakeStage.DISTANCES,
    BakeStage.UV_ANCHORS,
    BakeStage.SMOOTHING,
    BakeStage.GAMMA,
    BakeStage.RASTERIZING,
    BakeStage.MERGING,
]

TERMINAL_STAGES = frozenset({BakeStage.FINISHED, BakeStage.CANCELLED})

# Human-readable display names, shown as the progress message prefix.
STAGE_DISPLAY_NAMES = {
    BakeStage.IDLE: "Idle",
    BakeStage.DISTANCES: "Computing Distances",
    BakeStage.UV_ANCHORS: "Applying UV Anchors",
    BakeStage.SMOOTHING: "Smoothing",
    BakeStage.GAMMA: "Gamma Correcting",
    BakeStage.RASTERIZING: "Rasterizing",
    BakeStage.MERGING: "Merging & Padding",
    BakeStage.FINISHED: "Finished",
    BakeStage.CANCELLED: "Cancelled",
}

# Fraction of the overall progress bar owned by each stage, as
# (start, end). Distances dominate because they carry the ray casts.
STAGE_PROGRESS_RANGES = {
    BakeStage.DISTANCES: (0.0, 0.6),
    BakeStage.UV_ANCHORS: (0.6, 0.62),
    BakeStage.SMOOTHING: (0.62, 0.8),
    BakeStage.GAMMA: (0.8, 0.82),
    BakeStage.RASTERIZING: (0.82, 0.95),
    BakeStage.MERGING: (0.95, 1.0),
}

# Title passed to the progress sink for every report.
PROGRESS_TITLE = "Fur Mask Baker"

# Output texture resolution presets. Any positive size is accepted by the
# engine; these are the sizes offered to users.
TEXTURE_SIZES = {
    "512x512": 512,
    "1024x1024": 1024,
    "2048x2048": 2048,
    "4096x4096": 4096,
}
