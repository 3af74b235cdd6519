"""
Per-material direction maps for Fur Mask Baker.

By default each vertex casts its exclusion ray along the geometric normal.
A material may instead supply a tangent-space normal map (typically the fur
direction map authored for the shader). The ray then follows the decoded
direction, so fur that combs backwards is measured along the comb direction.

Decoding, per vertex:
    1. Bilinear sample of the map at the vertex UV (V is flipped: image row 0
       is the top of UV space).
    2. X and Y come from the R and G channels, or from A and G for "packed AG"
       maps (DXT5nm-style); each is mapped from [0, 1] to [-1, 1] and scaled
       by the material's strength. Z is rebuilt as sqrt(max(0, 1 - x² - y²)).
    3. The tangent-space vector is moved into world space with the vertex TBN
       frame (tangent w carries the bitangent handedness). Without tangents a
       frame is built from the normal and the world up axis.
    4. The result is blended with the geometric normal by clamp01(|strength|)
       and normalized. A strength below STRENGTH_EPSILON returns the normal.

When a map's layout is not configured, detect_packed_ag() tries both layouts
on up to AUTO_DETECT_SAMPLES vertices of the material and keeps the one whose
decoded directions agree best with the geometric normals.
"""

import logging
from pathlib import Path

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Strengths with a smaller magnitude leave the ray on the geometric normal.
STRENGTH_EPSILON = 1e-3

# Squared-length threshold below which a tangent is treated as missing.
TANGENT_EPSILON = 1e-3

# Squared-length threshold for the fallback frame's cross product with the
# up axis; near-vertical normals use the right axis instead.
FALLBACK_AXIS_EPSILON = 0.1

# A transformed direction shorter than this (squared) is rejected in favour
# of the normal.
MIN_WORLD_LENGTH_SQ = 0.1

# Number of material vertices scored when auto-detecting the AG layout.
AUTO_DETECT_SAMPLES = 64

WORLD_UP = np.array([0.0, 1.0, 0.0])
WORLD_RIGHT = np.array([1.0, 0.0, 0.0])


def _normalize(v):
    length = np.linalg.norm(v, axis=-1, keepdims=True)
    return v / np.where(length > 0.0, length, 1.0)


class DirectionMap:
    """
    A direction texture bound to one material.

    Attributes:
        pixels:    (H, W, 4) float32 RGBA in [0, 1].
        strength:  Scale applied to the decoded X/Y components.
        packed_ag: True for A/G layout, False for R/G, None to auto-detect.
    """

    def __init__(self, pixels, strength=1.0, packed_ag=None):
        pixels = np.asarray(pixels, dtype=np.float32)
        if pixels.ndim == 2:
            pixels = np.stack([pixels, pixels, pixels, np.ones_like(pixels)], axis=-1)
        elif pixels.shape[2] == 3:
            pixels = np.concatenate([pixels, np.ones(pixels.shape[:2] + (1,), np.float32)], axis=-1)
        self.pixels = pixels
        self.strength = float(strength)
        self.packed_ag = packed_ag

    @classmethod
    def from_file(cls, path, strength=1.0, packed_ag=None):
        """Load an 8-bit image through Pillow."""
        with Image.open(Path(path)) as img:
            rgba = np.asarray(img.convert("RGBA"), dtype=np.float32) / 255.0
        logger.debug("Loaded direction map %s (%dx%d)", path, rgba.shape[1], rgba.shape[0])
        return cls(rgba, strength=strength, packed_ag=packed_ag)

    @property
    def size(self):
        h, w = self.pixels.shape[:2]
        return w, h

    def sample(self, uvs):
        """
        Bilinear, wrapping sample at (N, 2) UVs.

        Returns:
            (N, 4) float64 RGBA.
        """
        uvs = np.asarray(uvs, dtype=np.float64).reshape(-1, 2)
        h, w = self.pixels.shape[:2]
        x = uvs[:, 0] * w - 0.5
        y = (1.0 - uvs[:, 1]) * h - 0.5

        x0 = np.floor(x).astype(np.int64)
        y0 = np.floor(y).astype(np.int64)
        fx = (x - x0)[:, None]
        fy = (y - y0)[:, None]
        x1 = (x0 + 1) % w
        y1 = (y0 + 1) % h
        x0 %= w
        y0 %= h

        p = self.pixels
        top = p[y0, x0] * (1.0 - fx) + p[y0, x1] * fx
        bottom = p[y1, x0] * (1.0 - fx) + p[y1, x1] * fx
        return (top * (1.0 - fy) + bottom * fy).astype(np.float64)


def decode_tangent_normal(colors, strength=1.0, packed_ag=False):
    """
    Decode (N, 4) RGBA samples into (N, 3) tangent-space vectors.

    X/Y are read from R/G (or A/G when packed_ag), remapped to [-1, 1] and
    scaled by strength; Z = sqrt(max(0, 1 - x² - y²)).
    """
    colors = np.asarray(colors, dtype=np.float64).reshape(-1, 4)
    x_channel = colors[:, 3] if packed_ag else colors[:, 0]
    x = (x_channel * 2.0 - 1.0) * strength
    y = (colors[:, 1] * 2.0 - 1.0) * strength
    z = np.sqrt(np.maximum(0.0, 1.0 - x * x - y * y))
    return np.stack([x, y, z], axis=1)


def _fallback_frame(normals):
    t = np.cross(normals, WORLD_UP)
    weak = np.sum(t * t, axis=1) < FALLBACK_AXIS_EPSILON
    if np.any(weak):
        t[weak] = np.cross(normals[weak], WORLD_RIGHT)
    t = _normalize(t)
    b = np.cross(normals, t)
    return t, b


def tangent_to_world(tangent_space, normals, tangents=None):
    """
    Transform (N, 3) tangent-space vectors into world space.

    Args:
        tangent_space: (N, 3) decoded vectors.
        normals:       (N, 3) vertex normals.
        tangents:      Optional (N, 4) vertex tangents, w = handedness.

    Returns:
        (N, 3) unit vectors.
    """
    ts = np.asarray(tangent_space, dtype=np.float64).reshape(-1, 3)
    raw_normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    n = _normalize(raw_normals)

    if tangents is None:
        t, b = _fallback_frame(n)
        return _normalize(t * ts[:, :1] + b * ts[:, 1:2] + n * ts[:, 2:3])

    tangents = np.asarray(tangents, dtype=np.float64).reshape(-1, 4)
    t = _normalize(tangents[:, :3])
    b = np.cross(n, t) * tangents[:, 3:4]
    world = _normalize(t * ts[:, :1] + b * ts[:, 1:2] + n * ts[:, 2:3])

    bad = ~np.all(np.isfinite(world), axis=1) | (np.sum(world * world, axis=1) < MIN_WORLD_LENGTH_SQ)
    world[bad] = raw_normals[bad]

    # Tangent-less vertices inside a tangent-carrying mesh use the decoded
    # vector directly.
    missing = np.sum(t * t, axis=1) < TANGENT_EPSILON
    world[missing] = _normalize(ts[missing])
    return world


def detect_packed_ag(direction_map: DirectionMap, normals, uvs, tangents=None):
    """
    Guess whether a map stores X in the alpha channel.

    Scores both layouts by the mean clamp01(dot(normal, decoded)) over the
    given vertices (the caller passes up to AUTO_DETECT_SAMPLES vertices of
    the material) and returns the better one. Ties keep the R/G layout.
    """
    normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    if len(normals) == 0:
        return False
    colors = direction_map.sample(uvs)
    n = _normalize(normals)

    best, best_score = False, -1.0
    for packed in (False, True):
        world = tangent_to_world(decode_tangent_normal(colors, 1.0, packed), normals, tangents)
        score = float(np.mean(np.clip(np.sum(n * world, axis=1), 0.0, 1.0)))
        if score > best_score:
            best, best_score = packed, score
    logger.debug("Direction map layout detected as %s (score %.3f)", "AG" if best else "RG", best_score)
    return best


def sample_ray_directions(direction_map: DirectionMap, uvs, normals, tangents=None):
    """
    Ray directions for a batch of vertices of one material.

    Args:
        direction_map: Map with packed_ag already resolved (None reads as RG).
        uvs:           (N, 2) vertex UVs.
        normals:       (N, 3) vertex normals.
        tangents:      Optional (N, 4) vertex tangents.

    Returns:
        (N, 3) unit directions.
    """
    normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    strength = direction_map.strength
    if abs(strength) < STRENGTH_EPSILON:
        return normals.copy()

    colors = direction_map.sample(uvs)
    ts = decode_tangent_normal(colors, strength, bool(direction_map.packed_ag))
    world = tangent_to_world(ts, normals, tangents)
    influence = min(1.0, abs(strength))
    return _normalize(normals + (world - normals) * influence)
