"""Adapter registry.

Builds the AdapterSet used by the run executor from settings. Dry runs get
placeholder adapters; otherwise speech, alignment and images go to the
OpenAI-compatible provider and music/encoding go to the local ffmpeg.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from reelpipe.capabilities.base import AdapterSet

if TYPE_CHECKING:
    from reelpipe.config import Settings

logger = logging.getLogger(__name__)


def build_adapters(settings: "Settings", dry_run: Optional[bool] = None) -> AdapterSet:
    """Return the adapter set for the given settings.

    Args:
        settings: Application settings.
        dry_run: Overrides settings.render.dry_run when given.

    Returns:
        AdapterSet ready to be shared by concurrent runs.
    """
    render = settings.render
    if dry_run is None:
        dry_run = render.dry_run

    if dry_run:
        from reelpipe.capabilities.dry_run import dry_run_adapters

        return dry_run_adapters(render.width, render.height)

    from reelpipe.capabilities.captions import AssCaptionBuilder
    from reelpipe.capabilities.ffmpeg_adapter import FFmpegMusicBuilder, FFmpegVideoEncoder
    from reelpipe.capabilities.openai_adapter import (
        OpenAIImageGenerator,
        OpenAISpeechSynthesizer,
        OpenAITranscriptAligner,
    )

    providers = settings.providers
    logger.debug(f"Routing speech/alignment/images to {providers.api_base_url} (has_key={bool(providers.api_key)})")
    return AdapterSet(
        speech=OpenAISpeechSynthesizer(
            providers.api_base_url,
            providers.api_key,
            providers.tts_model,
            providers.request_timeout_sec,
            ffprobe_binary=render.ffprobe_binary,
        ),
        aligner=OpenAITranscriptAligner(
            providers.api_base_url, providers.api_key, providers.asr_model, providers.request_timeout_sec
        ),
        images=OpenAIImageGenerator(
            providers.api_base_url, providers.api_key, providers.image_model, providers.request_timeout_sec
        ),
        captions=AssCaptionBuilder(render.width, render.height),
        music=FFmpegMusicBuilder(
            settings.storage.music_library_dir,
            ffmpeg_binary=render.ffmpeg_binary,
            timeout_sec=settings.runner.adapter_timeout_sec,
        ),
        encoder=FFmpegVideoEncoder(
            ffmpeg_binary=render.ffmpeg_binary,
            ffprobe_binary=render.ffprobe_binary,
            timeout_sec=settings.runner.encode_timeout_sec,
        ),
    )
