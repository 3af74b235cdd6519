"""
Bake settings for Fur Mask Baker.

BakeSettings is the read-only snapshot a bake is started with: influence
volumes, bone values, UV island anchors, per-material direction maps and the
numeric knobs of every stage. Settings persist as JSON; missing keys fall back
to the defaults below so older files keep loading.

Numeric ranges are enforced by clamped() rather than by raising, matching the
slider limits of the authoring UI. Only values with no sensible clamp (a
non-positive texture size or ray length) raise SettingsError.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path

from fur_mask_baker.core.distance_field import DEFAULT_MAX_DISTANCE, UVIslandAnchor
from fur_mask_baker.core.influence import BoneInfluence, SphereInfluence
from fur_mask_baker.core.texture_baker import DEFAULT_TEXTURE_SIZE
from fur_mask_baker.core.uv_islands import DEFAULT_UV_THRESHOLD

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults and limits
# ---------------------------------------------------------------------------

DEFAULT_GAMMA = 2.0
GAMMA_RANGE = (0.1, 5.0)

DEFAULT_SMOOTHING_ITERATIONS = 1
SMOOTHING_RANGE = (0, 8)

DEFAULT_SUBDIVISION_ITERATIONS = 0
SUBDIVISION_RANGE = (0, 3)


class SettingsError(ValueError):
    """Raised for unreadable settings files and unusable values."""
    pass


@dataclass
class DirectionMapSettings:
    """Direction texture for one material."""
    path: str
    strength: float = 1.0
    packed_ag: bool | None = None    # None -> auto-detect


@dataclass
class BakeSettings:
    spheres: list = field(default_factory=list)             # list[SphereInfluence]
    bone_masks: list = field(default_factory=list)          # list[BoneInfluence]
    uv_island_anchors: list = field(default_factory=list)   # list[UVIslandAnchor]
    direction_maps: dict = field(default_factory=dict)      # material -> DirectionMapSettings
    texture_size: int = DEFAULT_TEXTURE_SIZE
    max_distance: float = DEFAULT_MAX_DISTANCE
    gamma: float = DEFAULT_GAMMA
    batch_size: int | None = None                           # None -> adaptive
    smoothing_iterations: int = DEFAULT_SMOOTHING_ITERATIONS
    subdivision_iterations: int = DEFAULT_SUBDIVISION_ITERATIONS
    transparent_mode: bool = False
    edge_padding: int | None = None                         # None -> scaled to texture_size
    uv_threshold: float = DEFAULT_UV_THRESHOLD

    def clamped(self):
        """
        Return a copy with every numeric field inside its allowed range.

        Raises:
            SettingsError: texture_size or max_distance is not positive.
        """
        if int(self.texture_size) <= 0:
            raise SettingsError(f"texture_size must be positive, got {self.texture_size}")
        if float(self.max_distance) <= 0:
            raise SettingsError(f"max_distance must be positive, got {self.max_distance}")

        batch = self.batch_size
        if batch is not None:
            batch = max(1, int(batch))
        padding = self.edge_padding
        if padding is not None:
            padding = max(0, int(padding))

        return replace(
            self,
            texture_size=int(self.texture_size),
            max_distance=float(self.max_distance),
            gamma=_clamp(float(self.gamma), *GAMMA_RANGE),
            batch_size=batch,
            smoothing_iterations=int(_clamp(int(self.smoothing_iterations), *SMOOTHING_RANGE)),
            subdivision_iterations=int(_clamp(int(self.subdivision_iterations), *SUBDIVISION_RANGE)),
            edge_padding=padding,
            uv_threshold=max(0.0, float(self.uv_threshold)),
        )


def _clamp(value, lo, hi):
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# JSON persistence
# ---------------------------------------------------------------------------

def settings_to_dict(settings: BakeSettings) -> dict:
    return asdict(settings)


def settings_from_dict(data: dict) -> BakeSettings:
    """Build BakeSettings from a plain dict, ignoring unknown keys."""
    if not isinstance(data, dict):
        raise SettingsError(f"Settings must be a JSON object, got {type(data).__name__}")

    known = {f.name for f in fields(BakeSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))

    values = {k: v for k, v in data.items() if k in known}
    try:
        values["spheres"] = [
            SphereInfluence(**dict(s, position=tuple(s.get("position", (0.0, 0.0, 0.0)))))
            for s in values.get("spheres", [])
        ]
        values["bone_masks"] = [BoneInfluence(**b) for b in values.get("bone_masks", [])]
        values["uv_island_anchors"] = [
            UVIslandAnchor(**dict(a, seed_uv=tuple(a["seed_uv"])))
            for a in values.get("uv_island_anchors", [])
        ]
        values["direction_maps"] = {
            name: DirectionMapSettings(**d)
            for name, d in values.get("direction_maps", {}).items()
        }
    except (TypeError, KeyError) as e:
        raise SettingsError(f"Malformed settings entry: {e}") from e

    return BakeSettings(**values)


def load_settings(path) -> BakeSettings:
    """
    Read settings from a JSON file.

    Raises:
        SettingsError: The file is missing, not valid JSON, or malformed.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise SettingsError(f"Settings file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise SettingsError(f"Settings file {path} is not valid JSON: {e}") from e

    settings = settings_from_dict(data)
    logger.info("Loaded settings from %s", path)
    return settings


def save_settings(settings: BakeSettings, path) -> Path:
    """Write settings as indented JSON. Returns the path written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings_to_dict(settings), indent=2), encoding="utf-8")
    logger.info("Saved settings to %s", path)
    return path
