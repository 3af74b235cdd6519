"""
Fur Mask Baker — fur-shader mask and direction texture authoring engine.

This is the top-level package for the Fur Mask Baker tooling. The engine
turns a character mesh plus user-placed influence volumes, bone settings and
UV-island anchors into grayscale per-material textures that drive fur-shader
parameters (length, alpha, tilt).

The version string below is the single source of truth for the package
version, referenced by pyproject.toml and the command-line entry point.
"""

__version__ = "0.1.0"
