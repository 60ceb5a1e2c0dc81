import json
import logging
import re
import time

from fastapi import HTTPException
from openai import APIConnectionError, APIError, AuthenticationError, OpenAI, RateLimitError
from pydantic import ValidationError

from app.core.config import get_openai_keys, is_openai_configured, settings
from app.schemas.analyze import NutritionEstimate

logger = logging.getLogger(__name__)
OPENAI_TIMEOUT = 30.0
OPENAI_RETRY_WAIT = 1.5
OPENAI_RETRY_ONCE = (RateLimitError, APIConnectionError)

# One client per key (multi-key fallback)
_openai_clients: dict[str, OpenAI] = {}

# On these errors the next key is tried
OPENAI_FALLBACK_EXCEPTIONS = (AuthenticationError, RateLimitError)

SYSTEM_PROMPT = """You are a nutrition analysis assistant. Analyze the food in the image and return ONLY valid JSON with this exact structure:
{
  "name": "string - food item name",
  "brand": "string or null",
  "serving_size": "string - e.g. '1 cup (240g)'",
  "calories": number,
  "protein_g": number,
  "carbs_g": number,
  "fat_g": number,
  "fiber_g": number,
  "sugar_g": number,
  "sodium_mg": number,
  "ingredients": "string or null - comma-separated if visible",
  "allergens": "string or null - comma-separated",
  "health_notes": "string or null - brief health observations",
  "confidence": number between 0 and 1
}
Be accurate. If unsure, estimate conservatively and lower confidence."""

USER_PROMPT = "Analyze this food item for nutritional information."

# Development without OPENAI_API_KEY
MOCK_ESTIMATE = NutritionEstimate(
    name="Grilled Chicken Breast",
    brand=None,
    serving_size="1 breast (174g)",
    calories=284,
    protein_g=53.4,
    carbs_g=0,
    fat_g=6.2,
    fiber_g=0,
    sugar_g=0,
    sodium_mg=404,
    ingredients=None,
    allergens=None,
    health_notes="High protein, low carb. Good source of lean protein. Watch sodium if on restricted diet.",
    confidence=0.72,
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BARE_JSON = re.compile(r"\{[\s\S]*\}")


def _get_client_for_key(key: str) -> OpenAI:
    if key not in _openai_clients:
        _openai_clients[key] = OpenAI(api_key=key, timeout=OPENAI_TIMEOUT)
    return _openai_clients[key]


def _openai_create_with_fallback(create_fn):
    """
    Calls create_fn(client); on AuthenticationError or RateLimitError retries with the next key.
    Re-raises the last error when every key failed.
    """
    keys = get_openai_keys()
    last_exc: Exception | None = None
    for key in keys:
        try:
            return create_fn(_get_client_for_key(key))
        except OPENAI_FALLBACK_EXCEPTIONS as e:
            last_exc = e
            logger.warning("OpenAI key skipped (%s), trying the next one: %s", key[:12] + "...", e)
            continue
    if last_exc is not None:
        raise last_exc
    raise ValueError("No valid OpenAI key configured.")


def _openai_safe_call(create_fn):
    """One retry after 1.5 s on RateLimitError/APIConnectionError."""
    try:
        return create_fn()
    except OPENAI_RETRY_ONCE as e:
        logger.warning("OpenAI retry after %s: %s", type(e).__name__, e)
        time.sleep(OPENAI_RETRY_WAIT)
        return create_fn()


def parse_estimate(content: str) -> NutritionEstimate:
    """Pulls the JSON object out of the model reply (fenced block or first {...}) and validates it."""
    match = _FENCED_JSON.search(content)
    if match:
        json_str = match.group(1)
    else:
        match = _BARE_JSON.search(content)
        json_str = match.group(0) if match else content
    return NutritionEstimate.model_validate(json.loads(json_str.strip()))


def analyze_food_image(
    image_base64: str | None = None,
    mime_type: str | None = None,
    image_url: str | None = None,
) -> NutritionEstimate:
    """
    Estimates nutrition facts for one food photo with OpenAI vision.
    base64 is preferred (no download needed on OpenAI's side). Without a configured key a mock
    estimate is returned. Upstream and parsing failures raise HTTPException(502).
    """
    if not image_base64 and not image_url:
        raise ValueError("image_base64 or image_url is required")
    if not is_openai_configured():
        logger.info("OpenAI not configured, returning mock estimate")
        return MOCK_ESTIMATE.model_copy()

    url = f"data:{mime_type or 'image/jpeg'};base64,{image_base64}" if image_base64 else image_url

    def _create(client: OpenAI):
        return _openai_safe_call(lambda: client.chat.completions.create(
            model=settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": url}},
                    ],
                },
            ],
            max_tokens=800,
            temperature=0.2,
        ))

    try:
        response = _openai_create_with_fallback(_create)
    except (AuthenticationError, RateLimitError, APIConnectionError, APIError) as e:
        logger.exception("OpenAI API error in analyze_food_image: %s", e)
        raise HTTPException(status_code=502, detail="AI analysis failed") from e
    content = response.choices[0].message.content or ""
    try:
        return parse_estimate(content)
    except (ValueError, ValidationError) as e:
        logger.exception("Unparseable nutrition estimate: %s", content[:200])
        raise HTTPException(status_code=502, detail="AI analysis returned an unreadable result") from e
