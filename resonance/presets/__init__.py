"""
Bundled preset overlays for the worker configuration.

Each `.yaml` file provides a partial configuration tree that is merged over
`worker.yaml`. See `resonance/config_schema.apply_presets` for merge logic.
"""

from __future__ import annotations

__all__ = []
