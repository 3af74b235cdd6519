"""
Texture export for Fur Mask Baker.

Writes the per-material buffers of a finished bake as 8-bit RGBA PNG files
through Pillow, one file per material:

    <output_dir>/<prefix><material>.png

Material names come from the mesh and may contain characters that are not
valid in file names; texture_filename() replaces them. Two materials that
sanitize to the same name get a numeric suffix so no texture overwrites
another.
"""

import logging
import re
from pathlib import Path

from fur_mask_baker.core.texture_baker import MaterialBuffer, buffer_to_image

logger = logging.getLogger(__name__)


DEFAULT_PREFIX = "LengthMask_"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def texture_filename(material, prefix=DEFAULT_PREFIX, suffix=".png"):
    """File name for one material's texture, e.g. 'LengthMask_Body.png'."""
    safe = _UNSAFE_CHARS.sub("_", material).strip("._") or "Material"
    return f"{prefix}{safe}{suffix}"


def save_textures(textures, output_dir, prefix=DEFAULT_PREFIX):
    """
    Write textures to PNG files.

    Args:
        textures:   dict material -> MaterialBuffer or PIL Image.
        output_dir: Destination directory (created if missing).
        prefix:     File name prefix.

    Returns:
        dict material -> Path of the written file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = {}
    used = set()
    for material, texture in textures.items():
        image = buffer_to_image(texture) if isinstance(texture, MaterialBuffer) else texture

        name = texture_filename(material, prefix)
        stem = name[:-len(".png")]
        counter = 1
        while name in used:
            name = f"{stem}_{counter}.png"
            counter += 1
        used.add(name)

        path = output_dir / name
        image.save(path, "PNG")
        written[material] = path
        logger.info("Saved %s (%dx%d)", path.name, image.width, image.height)
    return written
