# services/vision.py
"""
Roof photo damage analysis through an OpenAI vision model.
"""
from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from api.app.config import get_settings
from jobs.errors import PermanentJobError, TransientJobError

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")

VISION_PROMPT = """You are an expert roofing damage assessor. Analyze the provided image and return a JSON object with:
- caption: a professional description of the damage visible (1-2 sentences)
- damages: array of findings, each with:
  - damage_type: one of hail_impact, granule_loss, wind_damage, lifted_shingle, missing_shingle,
    cracked_shingle, soft_metal_damage, flashing_damage, gutter_damage, vent_damage
  - severity: "low" | "medium" | "high" | "critical"
  - description: string
  - confidence: number 0-1
  - location: {"x": 0-100, "y": 0-100, "width": 5-30, "height": 5-30} (percent of image)
- materials: array of materials visible (e.g. "3-tab asphalt shingle", "metal flashing")
- overall_condition: brief assessment of overall roof condition
"""


class DamageLocation(BaseModel):
    x: float = 50.0
    y: float = 50.0
    width: float = 10.0
    height: float = 10.0


class Damage(BaseModel):
    damage_type: str
    severity: str = "medium"
    description: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    location: DamageLocation | None = None


class PhotoAnalysis(BaseModel):
    caption: str = ""
    damages: list[Damage] = Field(default_factory=list)
    materials: list[str] = Field(default_factory=list)
    overall_condition: str = ""


async def analyze_photo(photo_url: str) -> PhotoAnalysis:
    """
    Ask the vision model about one photo.

    Rate limits, timeouts and 5xx raise TransientJobError; anything the
    provider rejects outright raises PermanentJobError.
    """
    settings = get_settings()
    if not settings.openai_api_key:
        raise PermanentJobError("OPENAI_API_KEY is not configured")

    try:
        async with AsyncOpenAI(api_key=settings.openai_api_key) as client:
            response = await client.chat.completions.create(
                model=settings.openai_vision_model,
                messages=[
                    {"role": "system", "content": VISION_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "image_url", "image_url": {"url": photo_url}},
                            {"type": "text", "text": "Analyze this roofing photo for damage assessment."},
                        ],
                    },
                ],
                max_tokens=1500,
                temperature=0.2,
                response_format={"type": "json_object"},
            )
    except (
        openai.RateLimitError,
        openai.APITimeoutError,
        openai.APIConnectionError,
        openai.InternalServerError,
    ) as exc:
        raise TransientJobError(f"vision provider unavailable: {exc}") from exc
    except openai.APIStatusError as exc:
        raise PermanentJobError(f"vision provider rejected {photo_url}: {exc}") from exc

    content = response.choices[0].message.content or "{}"
    analysis = PhotoAnalysis.model_validate_json(content)
    logger.info("Vision: %s -> %d findings", photo_url, len(analysis.damages))
    return analysis
