"""
Texture synthesis for Fur Mask Baker.

Turns the smoothed per-vertex field into one RGBA texture per material:

    rasterize_triangles() — software UV rasterization. For each triangle the
        UV corners are mapped to pixel space (x = u * S, y = (1 - v) * S; V is
        flipped because image row 0 is the top), the pixel-space bounding box
        is clamped to the texture, and every pixel centre inside the triangle
        receives the barycentric interpolation of the three vertex values.
        Sub-pixel triangles (area below MIN_TRIANGLE_AREA) and triangles whose
        box misses the texture are skipped. A parallel boolean mask records
        which pixels real triangles covered.

    encode_mask_values() — maps field values to colours.
        opaque mode:      (v, v, v, 1) on a white background
        transparent mode: (v, v, v, 0) when v >= TRANSPARENT_CUTOFF, else
                          (0, 0, 0, 1 - v), on a (1, 1, 1, 0) background

    merge_buffers() — several submeshes may share one material. Their buffers
        are merged per pixel with a precedence function; by default the most
        masked colour wins (black-and-opaque first, then lower luminance, then
        lower alpha). Ties keep the existing pixel, so the merged result does
        not depend on submesh order.

    dilate_texture() — edge padding. Pixels within `radius` of the rasterized
        coverage copy the colour of the nearest rasterized pixel (Euclidean
        distance transform). Rasterized pixels are never written. The radius
        scales with resolution: PADDING_PIXELS_AT_1024 at 1024 px.

Public API:
    rasterize_triangles(uvs, triangles, vertex_data, image_size, ...)
        → (np.ndarray (S, S, C), np.ndarray (S, S) bool)
    encode_mask_values(values, transparent) → np.ndarray (..., 4)
    MaterialBuffer.from_values(material, value_image, rasterized, transparent)
    merge_buffers(base, overlay, precedence) → MaterialBuffer
    mask_precedence(pixels) → tuple of key arrays
    dilate_texture(img_data, filled_mask, radius) → np.ndarray
    padding_for_size(texture_size) → int
    buffer_to_image(buffer) → PIL Image (RGBA)
"""

from dataclasses import dataclass

import numpy as np
from PIL import Image
from scipy.ndimage import distance_transform_edt

from fur_mask_baker.core.mesh_data import valid_triangle_mask


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_TEXTURE_SIZE = 1024

# Epsilon for the barycentric inside test. A small negative value lets
# pixels exactly on triangle edges in, preventing hairline gaps between
# adjacent triangles.
BARY_EPSILON = -1e-5

# Triangles with a pixel-space area below this are skipped.
MIN_TRIANGLE_AREA = 0.5

# Edge padding radius at the 1024 px reference resolution. Scales linearly.
PADDING_PIXELS_AT_1024 = 4
PADDING_REFERENCE_SIZE = 1024

# Transparent mode: values at or above this are written as fully transparent
# unmasked texels.
TRANSPARENT_CUTOFF = 0.999

# Black-and-opaque detection used by the default merge precedence.
BLACK_THRESHOLD = 1e-3
OPAQUE_THRESHOLD = 0.99

OPAQUE_BACKGROUND = (1.0, 1.0, 1.0, 1.0)
TRANSPARENT_BACKGROUND = (1.0, 1.0, 1.0, 0.0)


# ---------------------------------------------------------------------------
# UV-space triangle rasterization
# ---------------------------------------------------------------------------

def rasterize_triangles(uvs, triangles, vertex_data, image_size, img=None, covered=None):
    """
    Rasterize UV-mapped triangles, interpolating per-vertex data.

    Args:
        uvs:         (N, 2) UV coordinates.
        triangles:   (T, 3) int vertex indices. Out-of-range triangles are skipped.
        vertex_data: (N, C) or (N,) per-vertex values to interpolate.
        image_size:  Output resolution (square).
        img:         Optional existing (S, S, C) float32 buffer to draw into.
        covered:     Optional existing (S, S) bool coverage mask to update.

    Returns:
        (img, covered). Later triangles overwrite earlier ones where they
        overlap. Uncovered pixels of a fresh buffer stay 0.
    """
    uvs = np.asarray(uvs, dtype=np.float64)
    vertex_data = np.asarray(vertex_data, dtype=np.float32)
    if vertex_data.ndim == 1:
        vertex_data = vertex_data[:, np.newaxis]
    n_channels = vertex_data.shape[1]

    if img is None:
        img = np.zeros((image_size, image_size, n_channels), dtype=np.float32)
    if covered is None:
        covered = np.zeros((image_size, image_size), dtype=bool)

    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    triangles = triangles[valid_triangle_mask(triangles, len(uvs))]

    # Pixel-space corners. Pixel (ix, iy) is sampled at its centre.
    px = uvs[:, 0] * image_size
    py = (1.0 - uvs[:, 1]) * image_size
    last = image_size - 1

    for i0, i1, i2 in triangles.tolist():
        x0, y0 = px[i0], py[i0]
        x1, y1 = px[i1], py[i1]
        x2, y2 = px[i2], py[i2]

        # Twice the signed area.
        denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
        if abs(denom) * 0.5 < MIN_TRIANGLE_AREA:
            continue

        xmin = int(np.floor(min(x0, x1, x2)))
        xmax = int(np.ceil(max(x0, x1, x2)))
        ymin = int(np.floor(min(y0, y1, y2)))
        ymax = int(np.ceil(max(y0, y1, y2)))
        if xmax < 0 or ymax < 0 or xmin > last or ymin > last:
            continue
        xmin, xmax = max(0, xmin), min(last, xmax)
        ymin, ymax = max(0, ymin), min(last, ymax)

        xs = np.arange(xmin, xmax + 1, dtype=np.float64) + 0.5
        ys = np.arange(ymin, ymax + 1, dtype=np.float64) + 0.5
        xx, yy = np.meshgrid(xs, ys)

        w0 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
        w1 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
        w2 = 1.0 - w0 - w1

        inside = (w0 >= BARY_EPSILON) & (w1 >= BARY_EPSILON) & (w2 >= BARY_EPSILON)
        if not inside.any():
            continue

        iy, ix = np.where(inside)
        w0_i = w0[iy, ix][:, np.newaxis]
        w1_i = w1[iy, ix][:, np.newaxis]
        w2_i = w2[iy, ix][:, np.newaxis]
        interpolated = w0_i * vertex_data[i0] + w1_i * vertex_data[i1] + w2_i * vertex_data[i2]

        img[ymin + iy, xmin + ix] = interpolated
        covered[ymin + iy, xmin + ix] = True

    return img, covered


# ---------------------------------------------------------------------------
# Colour encoding and per-material buffers
# ---------------------------------------------------------------------------

def background_color(transparent=False):
    return TRANSPARENT_BACKGROUND if transparent else OPAQUE_BACKGROUND


def encode_mask_values(values, transparent=False):
    """
    Encode field values as RGBA colours.

    Args:
        values:      Array of field values (any shape).
        transparent: Use the alpha-carrying encoding.

    Returns:
        float32 array of shape values.shape + (4,).
    """
    v = np.clip(np.asarray(values, dtype=np.float32), 0.0, 1.0)
    out = np.empty(v.shape + (4,), dtype=np.float32)
    if not transparent:
        out[..., 0] = out[..., 1] = out[..., 2] = v
        out[..., 3] = 1.0
        return out

    unmasked = v >= TRANSPARENT_CUTOFF
    grey = np.where(unmasked, v, 0.0)
    out[..., 0] = out[..., 1] = out[..., 2] = grey
    out[..., 3] = np.where(unmasked, 0.0, 1.0 - v)
    return out


@dataclass
class MaterialBuffer:
    """RGBA pixels for one material and the mask of rasterized pixels."""
    material: str
    pixels: np.ndarray          # (S, S, 4) float32
    rasterized: np.ndarray      # (S, S) bool, real triangle coverage only

    @property
    def size(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def blank(cls, material, size, transparent=False):
        pixels = np.empty((size, size, 4), dtype=np.float32)
        pixels[:] = background_color(transparent)
        return cls(material, pixels, np.zeros((size, size), dtype=bool))

    @classmethod
    def from_values(cls, material, value_image, rasterized, transparent=False):
        """Encode a rasterized (S, S) or (S, S, 1) value image."""
        value_image = np.asarray(value_image, dtype=np.float32)
        if value_image.ndim == 3:
            value_image = value_image[..., 0]
        buf = cls.blank(material, value_image.shape[0], transparent)
        buf.pixels[rasterized] = encode_mask_values(value_image[rasterized], transparent)
        buf.rasterized = np.array(rasterized, dtype=bool, copy=True)
        return buf


def mask_precedence(pixels):
    """
    Default merge key for mask textures; lexicographically lower wins.

    Order: black-and-opaque first, then lower luminance, then alpha.
    Black pixels prefer higher alpha (transparent mode stores v as
    (0, 0, 0, 1 - v)); other pixels prefer lower alpha.
    Raw channels close the order so distinct colours never tie.
    """
    r, g, b, a = pixels[..., 0], pixels[..., 1], pixels[..., 2], pixels[..., 3]
    black = r < BLACK_THRESHOLD
    black_opaque = black & (a > OPAQUE_THRESHOLD)
    luminance = 0.2126 * r + 0.7152 * g + 0.0722 * b
    return (~black_opaque, luminance, np.where(black, -a, a), r, g, b)


def _overlay_wins(base_keys, overlay_keys):
    wins = np.zeros(np.shape(base_keys[0]), dtype=bool)
    decided = np.zeros_like(wins)
    for kb, ko in zip(base_keys, overlay_keys):
        less = ko < kb
        greater = ko > kb
        wins |= ~decided & less
        decided |= less | greater
    return wins


def merge_buffers(base, overlay, precedence=mask_precedence):
    """
    Merge two buffers of the same material.

    Pixels rasterized in only one buffer are taken from it; pixels rasterized
    in both take the colour with the lower precedence key (base on ties).
    Pixels rasterized in neither keep the base background.

    Returns:
        A new MaterialBuffer; inputs are not modified.
    """
    if base.pixels.shape != overlay.pixels.shape:
        raise ValueError(
            f"Cannot merge buffers of different sizes: {base.pixels.shape} vs {overlay.pixels.shape}"
        )

    pixels = base.pixels.copy()
    only_overlay = overlay.rasterized & ~base.rasterized
    both = overlay.rasterized & base.rasterized

    take = only_overlay.copy()
    if both.any():
        keys_b = precedence(base.pixels[both])
        keys_o = precedence(overlay.pixels[both])
        take[both] = _overlay_wins(keys_b, keys_o)

    pixels[take] = overlay.pixels[take]
    return MaterialBuffer(base.material, pixels, base.rasterized | overlay.rasterized)


# ---------------------------------------------------------------------------
# Edge padding
# ---------------------------------------------------------------------------

def padding_for_size(texture_size):
    """Edge padding radius for a resolution (4 px at 1024, linear)."""
    return max(0, int(round(PADDING_PIXELS_AT_1024 * texture_size / PADDING_REFERENCE_SIZE)))


def dilate_texture(img_data, filled_mask, radius=PADDING_PIXELS_AT_1024):
    """
    Pad rasterized regions outward by copying the nearest rasterized pixel.

    Uses scipy.ndimage.distance_transform_edt for a single vectorized pass:
    each unfilled pixel learns its distance to, and the row/col of, the
    nearest filled pixel.

    Args:
        img_data:    (H, W, C) or (H, W) texture data.
        filled_mask: (H, W) bool, True where triangles were rasterized.
        radius:      Padding radius in pixels; 0 disables padding.

    Returns:
        A padded copy of img_data. Pixels in filled_mask are unchanged.
    """
    result = img_data.copy()
    if radius <= 0 or not filled_mask.any() or filled_mask.all():
        return result

    dist, nearest_indices = distance_transform_edt(~filled_mask, return_indices=True)

    dilation_mask = (dist > 0) & (dist <= radius)
    if dilation_mask.any():
        nearest_r = nearest_indices[0][dilation_mask]
        nearest_c = nearest_indices[1][dilation_mask]
        result[dilation_mask] = img_data[nearest_r, nearest_c]
    return result


def pad_buffer(buffer: MaterialBuffer, radius):
    """Apply dilate_texture to a MaterialBuffer; the rasterized mask is kept."""
    if radius <= 0:
        return buffer
    return MaterialBuffer(buffer.material, dilate_texture(buffer.pixels, buffer.rasterized, radius),
                          buffer.rasterized)


def buffer_to_image(buffer: MaterialBuffer):
    """Convert to an 8-bit RGBA PIL Image."""
    img_uint8 = np.round(np.clip(buffer.pixels, 0.0, 1.0) * 255).astype(np.uint8)
    return Image.fromarray(img_uint8)
