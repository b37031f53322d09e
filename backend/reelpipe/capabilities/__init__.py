"""Capability adapter layer.

Narrow async interfaces to speech synthesis, forced alignment, image
generation, caption building, music beds and media encoding.

Usage:
    from reelpipe.capabilities import build_adapters

    adapters = build_adapters(settings, dry_run=True)
    result = await adapters.speech.synthesize(text, voice, path)
"""

from reelpipe.capabilities.base import AdapterSet
from reelpipe.capabilities.registry import build_adapters

__all__ = ["AdapterSet", "build_adapters"]
