"""
Resonance generation worker.

Modules are structured to separate configuration loading, job intake, audio
feature extraction, shader rendering, frame encoding and job orchestration.
See `cli.py` for the primary entry point and `serverless.py` for the
per-request handler.
"""

from __future__ import annotations

from pathlib import Path

# Base directory convenient for locating bundled presets/templates/shaders.
PACKAGE_ROOT = Path(__file__).resolve().parent

__version__ = "0.4.0"

__all__ = ["PACKAGE_ROOT", "__version__"]
