"""
Influence evaluators for Fur Mask Baker.

Influences are user-authored volumes and per-bone values that reduce the mask
independently of the mesh topology. Every evaluator returns a value in [0, 1]
where 0 means fully masked (no fur) and 1 means unmasked.

Sphere influence:
    A sphere has a hard core and a soft shell. Inside the core radius
    (radius * (1 - gradient_width)) the mask is 0. Across the shell it ramps
    linearly to 1 at the outer radius. Intensity scales how far the ramp pulls
    the value down: intensity 1 gives the full 0..1 ramp, intensity 0.1 barely
    touches the mask. Mirrored spheres are also evaluated at their X-reflected
    position; the lower of the two values wins.

    Several spheres combine by taking the minimum, i.e. the most restrictive
    sphere wins.

Bone influence:
    The host resolves a per-vertex "bone control" value from skin weights
    (resolve_bone_control). The mask is 1 - clamp(control, 0, 1).
"""

from dataclasses import dataclass

import numpy as np


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Intensity is clamped to this range before use.
MIN_INTENSITY = 0.1
MAX_INTENSITY = 1.0

# Guards the gradient division when gradient_width is 0 (hard-edged sphere).
GRADIENT_EPSILON = 1e-6

# Largest radius the authoring tools allow, in scene units.
SPHERE_MAX_RADIUS = 0.5


@dataclass
class SphereInfluence:
    """A spherical gradient volume that masks fur near its centre."""
    position: tuple = (0.0, 0.0, 0.0)
    radius: float = 0.1
    gradient_width: float = 0.5      # Fraction of the radius used by the soft shell
    intensity: float = 1.0
    use_mirror: bool = False         # Also evaluate the sphere reflected across X

    def mirrored_position(self):
        x, y, z = self.position
        return (-x, y, z)


@dataclass
class BoneInfluence:
    """Mask value assigned to one bone of the skeleton."""
    bone_path: str
    value: float = 0.0


@dataclass
class SkinWeights:
    """Skin binding of a mesh, as supplied by the host."""
    bone_paths: list                 # "/"-separated path of every bone, by bone index
    bone_indices: np.ndarray         # (N, K) int
    bone_weights: np.ndarray         # (N, K) float


# ---------------------------------------------------------------------------
# Sphere masks
# ---------------------------------------------------------------------------

def _sphere_mask_at(points, center, sphere):
    radius = float(sphere.radius)
    gradient = float(np.clip(sphere.gradient_width, 0.0, 1.0))
    inner = radius * (1.0 - gradient)
    intensity = float(np.clip(sphere.intensity, MIN_INTENSITY, MAX_INTENSITY))

    dist = np.linalg.norm(points - np.asarray(center, dtype=np.float64), axis=-1)
    t = np.clip((dist - inner) / max(GRADIENT_EPSILON, radius - inner), 0.0, 1.0)
    value = 1.0 + (t - 1.0) * intensity
    return np.where(dist <= inner, 0.0, value)


def sphere_mask(position, sphere: SphereInfluence):
    """
    Evaluate one sphere at a position or an (N, 3) array of positions.

    Returns:
        float for a single position, (N,) array otherwise.
    """
    points = np.asarray(position, dtype=np.float64)
    value = _sphere_mask_at(points, sphere.position, sphere)
    if sphere.use_mirror:
        value = np.minimum(value, _sphere_mask_at(points, sphere.mirrored_position(), sphere))
    if points.ndim == 1:
        return float(value)
    return value


def combined_sphere_mask(positions, spheres):
    """
    Minimum sphere mask over all spheres for an (N, 3) array of positions.

    Vertices outside every sphere (and every mirrored sphere) evaluate to 1
    without any per-sphere ramp math.
    """
    points = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    result = np.ones(len(points), dtype=np.float64)
    for sphere in spheres:
        centers = [np.asarray(sphere.position, dtype=np.float64)]
        if sphere.use_mirror:
            centers.append(np.asarray(sphere.mirrored_position(), dtype=np.float64))
        r2 = float(sphere.radius) ** 2
        near = np.zeros(len(points), dtype=bool)
        for center in centers:
            near |= np.sum((points - center) ** 2, axis=1) <= r2
        if not np.any(near):
            continue
        result[near] = np.minimum(result[near], sphere_mask(points[near], sphere))
    return result


# ---------------------------------------------------------------------------
# Bone masks
# ---------------------------------------------------------------------------

def bone_mask(bone_control):
    """1 - clamp(control, 0, 1); accepts a scalar or an array."""
    value = 1.0 - np.clip(np.asarray(bone_control, dtype=np.float64), 0.0, 1.0)
    if value.ndim == 0:
        return float(value)
    return value


def _bone_values(bone_paths, bone_influences):
    """Per-bone value, inheriting from the nearest ancestor with an explicit value."""
    explicit = {b.bone_path.strip("/"): float(np.clip(b.value, 0.0, 1.0)) for b in bone_influences}
    values = np.zeros(len(bone_paths), dtype=np.float64)
    for i, path in enumerate(bone_paths):
        parts = path.strip("/").split("/")
        while parts:
            key = "/".join(parts)
            if key in explicit:
                values[i] = explicit[key]
                break
            parts.pop()
    return values


def resolve_bone_control(bone_influences, bone_paths, bone_indices, bone_weights):
    """
    Resolve the per-vertex bone control array from skin weights.

    Args:
        bone_influences: BoneInfluence list. Paths are "/"-separated from the
                         skeleton root.
        bone_paths:      Path of every skeleton bone, in bone-index order.
        bone_indices:    (N, K) int bone index per skin slot.
        bone_weights:    (N, K) float weight per skin slot.

    Returns:
        (N,) float array in [0, 1]: the weight-averaged value over slots with
        positive weight; 0 for vertices with no positive weight.
    """
    indices = np.asarray(bone_indices, dtype=np.int64)
    weights = np.asarray(bone_weights, dtype=np.float64)
    if indices.ndim == 1:
        indices = indices[:, None]
        weights = weights[:, None]

    values = _bone_values(bone_paths, bone_influences)
    if len(values) == 0:
        return np.zeros(len(indices), dtype=np.float64)
    in_range = (indices >= 0) & (indices < len(values))
    active = in_range & (weights > 0.0)
    slot_values = np.where(active, values[np.where(in_range, indices, 0)], 0.0)
    slot_weights = np.where(active, weights, 0.0)

    total = slot_weights.sum(axis=1)
    weighted = (slot_values * slot_weights).sum(axis=1)
    return np.where(total > 0.0, weighted / np.where(total > 0.0, total, 1.0), 0.0)
