"""Niche packs: per-genre image style, negative prompt, caption style and music mood."""

from typing import Dict, Optional

from pydantic import BaseModel

from reelpipe.schemas.render import CaptionStyle

DEFAULT_NEGATIVE_PROMPT = (
    "blurry, low quality, watermark, text, logo, signature, cropped, out of frame, "
    "worst quality, low resolution, duplicate, deformed, bad anatomy, bad proportions, "
    "extra limbs, poorly drawn hands, poorly drawn face"
)


class NichePack(BaseModel):
    id: str
    name: str
    style_bible_prompt: str
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    caption_style: CaptionStyle = CaptionStyle()
    music_mood: str = "neutral"


NICHE_PACKS: Dict[str, NichePack] = {
    pack.id: pack
    for pack in [
        NichePack(
            id="horror",
            name="Horror Stories",
            style_bible_prompt=(
                "Dark, eerie, cinematic horror style, atmospheric lighting, muted colors "
                "with red accents, fog and shadows, high contrast, dramatic composition"
            ),
            negative_prompt=DEFAULT_NEGATIVE_PROMPT + ", happy, bright colors, cartoon, anime",
            caption_style=CaptionStyle(primary_color="#FF0000", highlight_color="#FFFFFF"),
            music_mood="dark",
        ),
        NichePack(
            id="facts",
            name="Amazing Facts",
            style_bible_prompt=(
                "Clean, modern, educational style, bright vibrant colors, clear composition, "
                "professional photography style, well-lit subjects"
            ),
            caption_style=CaptionStyle(primary_color="#00D4FF", highlight_color="#FFD700"),
            music_mood="upbeat",
        ),
        NichePack(
            id="motivation",
            name="Motivation",
            style_bible_prompt=(
                "Inspiring, epic, cinematic style, golden hour lighting, dramatic skies, "
                "powerful imagery, mountains and sunrises"
            ),
            negative_prompt=DEFAULT_NEGATIVE_PROMPT + ", sad, depressing, dark mood",
            caption_style=CaptionStyle(primary_color="#FFD700", highlight_color="#FFFFFF"),
            music_mood="epic",
        ),
        NichePack(
            id="history",
            name="History",
            style_bible_prompt=(
                "Historical documentary style, aged film texture, sepia and warm tones, "
                "museum-quality detail, period-accurate settings"
            ),
            music_mood="cinematic",
        ),
    ]
}


def get_niche_pack(pack_id: Optional[str]) -> NichePack:
    """Return the pack for pack_id, falling back to 'facts' for unknown ids."""
    if pack_id and pack_id in NICHE_PACKS:
        return NICHE_PACKS[pack_id]
    return NICHE_PACKS["facts"]
