"""OpenAI-compatible HTTP adapters for speech, alignment and image generation.

Talks to any server implementing the /audio/speech, /audio/transcriptions
and /images/generations endpoints via httpx. Errors are classified here:
timeouts, connection failures, 408/409/429 and 5xx are transient; every
other HTTP error (bad credentials, content policy, malformed prompt) is
permanent. Retrying is left to the run executor.
"""

import asyncio
import base64
import logging
from pathlib import Path
from typing import Optional

import httpx

from reelpipe.capabilities.base import ImageGenerator, SpeechSynthesizer, TranscriptAligner
from reelpipe.capabilities.ffmpeg_adapter import probe_duration
from reelpipe.errors import PermanentAdapterError, TransientAdapterError
from reelpipe.schemas.render import ImageResult, SpeechResult, StyleConfig, TimingData, VoiceConfig, WordTiming

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {408, 409, 429}


def classify_http_error(exc: Exception, capability: str) -> Exception:
    """Map an httpx failure onto the adapter error taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = exc.response.text[:300]
        message = f"{capability} request failed with HTTP {status}: {detail}"
        if status in TRANSIENT_STATUS or status >= 500:
            return TransientAdapterError(message, capability=capability)
        return PermanentAdapterError(message, capability=capability)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientAdapterError(f"{capability} request failed: {type(exc).__name__}: {exc}", capability=capability)
    return PermanentAdapterError(f"{capability} request failed: {type(exc).__name__}: {exc}", capability=capability)


class _OpenAIEndpoint:
    """Shared connection settings. Holds no per-call state."""

    capability = "openai"

    def __init__(self, base_url: str, api_key: Optional[str], model: str, timeout_sec: float = 120.0):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = httpx.Timeout(timeout_sec, connect=30.0)

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        if not self._api_key:
            raise PermanentAdapterError(
                f"{self.capability}: provider API key is not configured", capability=self.capability
            )
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(base_url=self._base_url, headers=headers, timeout=self._timeout) as client:
                response = await client.post(path, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPError as e:
            raise classify_http_error(e, self.capability) from e


class OpenAISpeechSynthesizer(_OpenAIEndpoint, SpeechSynthesizer):
    """Text-to-speech via /audio/speech; clip duration measured with ffprobe."""

    capability = "tts"

    def __init__(self, base_url: str, api_key: Optional[str], model: str = "tts-1",
                 timeout_sec: float = 120.0, ffprobe_binary: str = "ffprobe"):
        super().__init__(base_url, api_key, model, timeout_sec)
        self._ffprobe = ffprobe_binary

    async def synthesize(self, text: str, voice: VoiceConfig, output_path: Path) -> SpeechResult:
        if not text.strip():
            raise PermanentAdapterError("Cannot synthesize empty narration", capability=self.capability)

        response = await self._post(
            "/audio/speech",
            json={
                "model": self._model,
                "voice": voice.voice,
                "input": text,
                "speed": voice.speed,
                "response_format": voice.audio_format,
            },
        )
        await asyncio.to_thread(Path(output_path).write_bytes, response.content)
        duration = await probe_duration(Path(output_path), self._ffprobe)
        logger.debug(f"TTS produced {len(response.content)} bytes ({duration:.2f}s)")
        return SpeechResult(duration_sec=duration)


class OpenAITranscriptAligner(_OpenAIEndpoint, TranscriptAligner):
    """Word-level alignment via /audio/transcriptions (verbose_json, word granularity).

    The known narration is passed as the prompt to bias recognition towards
    the script.
    """

    capability = "asr"

    async def align(self, audio_path: Path, text: str) -> TimingData:
        audio_bytes = await asyncio.to_thread(Path(audio_path).read_bytes)
        response = await self._post(
            "/audio/transcriptions",
            data={
                "model": self._model,
                "response_format": "verbose_json",
                "timestamp_granularities[]": "word",
                "prompt": text[:1000],
            },
            files={"file": (Path(audio_path).name, audio_bytes, "application/octet-stream")},
        )
        try:
            payload = response.json()
            words = [
                WordTiming(word=w["word"], start=float(w["start"]), end=float(w["end"]))
                for w in payload.get("words") or []
            ]
            duration = float(payload.get("duration") or (words[-1].end if words else 0.0))
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentAdapterError(f"Malformed transcription response: {e}", capability=self.capability) from e

        return TimingData(text=payload.get("text", text), words=words, duration_sec=duration)


class OpenAIImageGenerator(_OpenAIEndpoint, ImageGenerator):
    """Image generation via /images/generations with base64 payloads."""

    capability = "image"

    async def generate(self, prompt: str, style: StyleConfig, output_path: Path) -> ImageResult:
        if not prompt.strip():
            raise PermanentAdapterError("Cannot generate an image from an empty prompt", capability=self.capability)

        full_prompt = prompt
        if style.negative_prompt:
            full_prompt = f"{prompt}. Avoid: {style.negative_prompt}"

        response = await self._post(
            "/images/generations",
            json={
                "model": self._model,
                "prompt": full_prompt[:4000],
                "n": 1,
                "size": style.size,
                "response_format": "b64_json",
            },
        )
        try:
            item = response.json()["data"][0]
            image_bytes = base64.b64decode(item["b64_json"])
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise PermanentAdapterError(f"Malformed image response: {e}", capability=self.capability) from e

        await asyncio.to_thread(Path(output_path).write_bytes, image_bytes)
        return ImageResult(revised_prompt=item.get("revised_prompt"))
