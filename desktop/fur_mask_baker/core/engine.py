"""
Mask bake engine for Fur Mask Baker.

MaskBakeEngine is the long-lived object a host keeps per tool instance. It
owns the per-mesh caches that bakes share read-only:

    - the UV island cache (triangle adjacency + computed islands per submesh)
    - the vertex adjacency matrices used by the smoother
    - loaded direction map images

and hands out BakeJob objects wired to those caches. Separate engine
instances share nothing, so two tool windows on two meshes never interfere.

Public API:
    MaskBakeEngine.create_job(snapshot, settings, ...) → BakeJob
    MaskBakeEngine.bake(snapshot, settings, ...)       → BakeResult
    MaskBakeEngine.vertex_adjacency(snapshot)          → scipy.sparse.csr_matrix
    MaskBakeEngine.invalidate(mesh_id=None)
"""

import logging
from collections import OrderedDict
from pathlib import Path

from fur_mask_baker.core.adjacency import adjacency_matrix, build_vertex_adjacency
from fur_mask_baker.core.bake_job import BakeJob
from fur_mask_baker.core.direction_map import DirectionMap
from fur_mask_baker.core.influence import resolve_bone_control
from fur_mask_baker.core.settings import BakeSettings
from fur_mask_baker.core.texture_baker import mask_precedence
from fur_mask_baker.core.uv_islands import MAX_CACHE_BYTES, MAX_CACHE_ENTRIES, UVIslandCache

logger = logging.getLogger(__name__)


# Vertex adjacency matrices kept per engine.
MAX_ADJACENCY_ENTRIES = 4


class EngineError(Exception):
    """
    Raised by MaskBakeEngine.bake() when a bake ends without a result.

    Wraps the underlying failure (stored on the job) with a message naming
    the mesh. Validation errors from BakeJob.start() propagate unchanged.
    """
    pass


class MaskBakeEngine:
    """
    Cache owner and job factory.

    Args:
        island_cache:    Optional UVIslandCache to use; a fresh one bounded by
                         the default budgets is created otherwise.
        precedence:      Merge precedence passed to every job.
    """

    def __init__(self, island_cache=None, precedence=mask_precedence):
        self.island_cache = island_cache if island_cache is not None else UVIslandCache(
            MAX_CACHE_ENTRIES, MAX_CACHE_BYTES,
        )
        self.precedence = precedence
        self._adjacency = OrderedDict()
        self._direction_maps = {}

    # -----------------------------------------------------------------------
    # Caches
    # -----------------------------------------------------------------------

    def vertex_adjacency(self, snapshot):
        """
        Sparse vertex adjacency for a snapshot, rebuilt when the mesh's
        vertex or triangle count changes.
        """
        key = snapshot.mesh_id
        counts = (snapshot.vertex_count, snapshot.triangle_count)
        cached = self._adjacency.get(key)
        if cached is not None and cached[0] == counts:
            self._adjacency.move_to_end(key)
            return cached[1]

        logger.debug("Building vertex adjacency for %s", key)
        matrix = adjacency_matrix(build_vertex_adjacency(snapshot.submeshes, snapshot.vertex_count))
        self._adjacency[key] = (counts, matrix)
        self._adjacency.move_to_end(key)
        while len(self._adjacency) > MAX_ADJACENCY_ENTRIES:
            self._adjacency.popitem(last=False)
        return matrix

    def direction_map(self, map_settings):
        """Load (once) the DirectionMap described by DirectionMapSettings."""
        path = str(Path(map_settings.path).resolve())
        image = self._direction_maps.get(path)
        if image is None:
            image = DirectionMap.from_file(path)
            self._direction_maps[path] = image
        # Strength and layout are per-settings; pixels are shared.
        return DirectionMap(image.pixels, map_settings.strength, map_settings.packed_ag)

    def invalidate(self, mesh_id=None):
        """Forget cached topology for one mesh, or for every mesh."""
        self.island_cache.invalidate(mesh_id)
        if mesh_id is None:
            self._adjacency.clear()
            self._direction_maps.clear()
        else:
            self._adjacency.pop(mesh_id, None)

    # -----------------------------------------------------------------------
    # Jobs
    # -----------------------------------------------------------------------

    def create_job(self, snapshot, settings: BakeSettings | None = None, collider=None,
                   skin=None, bone_control=None, progress_sink=None) -> BakeJob:
        """
        Build a BakeJob wired to this engine's caches.

        Args:
            snapshot:      MeshSnapshot to bake.
            settings:      BakeSettings (defaults if omitted).
            collider:      Optional ExclusionCollider.
            skin:          Optional SkinWeights; with settings.bone_masks it
                           resolves the per-vertex bone control.
            bone_control:  Optional pre-resolved (N,) bone control; wins over skin.
            progress_sink: Optional (title, message, fraction) -> cancel.
        """
        settings = settings if settings is not None else BakeSettings()

        if bone_control is None and skin is not None and settings.bone_masks:
            bone_control = resolve_bone_control(
                settings.bone_masks, skin.bone_paths, skin.bone_indices, skin.bone_weights,
            )

        direction_maps = {
            material: self.direction_map(map_settings)
            for material, map_settings in settings.direction_maps.items()
        }

        return BakeJob(
            snapshot,
            settings,
            collider=collider,
            bone_control=bone_control,
            direction_maps=direction_maps,
            island_cache=self.island_cache,
            adjacency_provider=self.vertex_adjacency,
            progress_sink=progress_sink,
            precedence=self.precedence,
        )

    def bake(self, snapshot, settings=None, collider=None, skin=None, bone_control=None,
             progress_sink=None):
        """
        Run a bake to completion on the calling thread.

        Returns:
            BakeResult.

        Raises:
            EngineError: The bake was cancelled or failed.
        """
        job = self.create_job(snapshot, settings, collider, skin, bone_control, progress_sink)
        status = job.run()
        if not status.finished:
            raise EngineError(f"Bake of {snapshot.mesh_id} did not finish: {status.message}") from job.error
        return job.result
