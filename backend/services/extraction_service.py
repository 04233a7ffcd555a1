"""
Extraction Service — reads a receipt image with Claude Vision and returns the
raw, untrusted extraction mapping that normalize_service turns into a draft.

Nothing here is trusted downstream: the model may return strings for
numbers, skip fields, or invent categories.  This module only guarantees a
JSON object; the Normalizer does the rest.  The one piece of enrichment done
here is filling a missing vat_rate from the UK category defaults, since the
classifier is the party that knows what kind of product a line is.
"""
import base64
import io
import json
import logging
import os
import re
from typing import Any

from models.schemas import Category

logger = logging.getLogger("tally.extraction")

EXTRACTION_MODEL = os.environ.get("EXTRACTION_MODEL", "claude-sonnet-4-5")

try:
    from PIL import Image, ImageOps
    PIL_AVAILABLE = True
except ImportError:
    PIL_AVAILABLE = False
    logger.warning("Pillow not available — images are sent to Vision unresized")

# iPhone receipts arrive as HEIC; Vision only takes JPEG/PNG/GIF/WEBP
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed — HEIC receipts will not be converted")


class ExtractionError(Exception):
    """Raised when the receipt could not be read (no key, API error, bad JSON)."""
    pass


# UK VAT: most food is zero-rated; confectionery, soft drinks, cleaning and
# toiletries are standard-rated.
CATEGORY_VAT_DEFAULTS: dict[Category, int] = {
    Category.MEAT_FISH: 0,
    Category.VEGETABLES_FRUITS: 0,
    Category.DAIRY_EGGS: 0,
    Category.BAKERY: 0,
    Category.SNACKS_SWEETS: 20,
    Category.BEVERAGES: 20,
    Category.HOUSEHOLD_CLEANING: 20,
    Category.PERSONAL_CARE: 20,
    Category.FROZEN_FOODS: 0,
    Category.PANTRY_STAPLES: 0,
    Category.OTHER: 0,
}


def default_vat_rate_for_category(category: Any) -> int:
    try:
        return CATEGORY_VAT_DEFAULTS[Category(category)]
    except (ValueError, KeyError, TypeError):
        return 0


def apply_category_vat_defaults(raw: dict) -> dict:
    """Return a copy of `raw` where items without a vat_rate get their category default."""
    items = raw.get("items")
    if not isinstance(items, list):
        return dict(raw)
    filled = []
    for item in items:
        if isinstance(item, dict) and item.get("vat_rate") in (None, ""):
            item = {**item, "vat_rate": default_vat_rate_for_category(item.get("category"))}
        filled.append(item)
    return {**raw, "items": filled}


def _prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + compress an image so it fits within Claude Vision limits:
    - Max dimension: 1568px on the long side
    Returns (compressed_bytes, media_type).
    """
    if image_bytes[:4] == b'\x89PNG':
        orig_type = "image/png"
    elif image_bytes[:3] == b'\xff\xd8\xff':
        orig_type = "image/jpeg"
    elif image_bytes[:4] == b'%PDF':
        return image_bytes, "application/pdf"   # caller will refuse
    else:
        orig_type = "image/jpeg"   # HEIC / WEBP etc.

    if not PIL_AVAILABLE:
        return image_bytes, orig_type

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)   # phone photos are often rotated in metadata
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        max_dim = 1568
        w, h = img.size
        long_side = max(w, h)
        if long_side > max_dim:
            scale = max_dim / long_side
            img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=92, optimize=True)
        return buf.getvalue(), "image/jpeg"
    except Exception as e:
        logger.warning("Image prep failed (%s), sending original", e)
        return image_bytes, orig_type


def parse_extraction_payload(text: str) -> dict:
    """Strip markdown fences from a model reply and parse the JSON object inside."""
    raw = text.strip()
    raw = re.sub(r'^```[a-z]*\n?', '', raw)
    raw = re.sub(r'\n?```$', '', raw)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Extraction reply was not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionError(f"Extraction reply was {type(data).__name__}, expected an object")
    return data


def _build_prompt() -> str:
    categories = ", ".join(c.value for c in Category)
    return f"""You are a UK grocery receipt data extractor. Read this receipt line by line and output structured JSON.

For EVERY purchased item record:
  • quantity         — units purchased (1 if not stated)
  • unit_price       — price of ONE unit, in pounds
  • total_price      — the amount charged for the line (rightmost amount)
  • discount_applied — any multi-buy / loyalty saving attributed to this line (0 if none)
  • category         — exactly one of: {categories}
  • vat_rate         — 0, 5 or 20 if a VAT code is printed for the line, otherwise null

SELF-CHECK: quantity × unit_price − discount_applied should equal total_price.

Output ONLY this JSON (no prose, no markdown):

{{
  "store_name": "string or null",
  "store_location": "string or null",
  "purchase_date": "YYYY-MM-DD or null",
  "total_amount": number or null,
  "items": [
    {{
      "name": "text as printed",
      "canonical_name": "human-readable name, abbreviations expanded",
      "brand": "string or null",
      "category": "one of the categories above",
      "quantity": number,
      "unit_price": number,
      "total_price": number,
      "discount_applied": number,
      "offer_description": "string or null",
      "pack_size_value": number or null,
      "pack_size_unit": "g | kg | ml | l | each | null",
      "is_own_brand": boolean,
      "vat_rate": number or null,
      "confidence_score": 1-5
    }}
  ]
}}"""


async def extract_receipt(image_bytes: bytes) -> dict:
    """
    Send the receipt image to Claude Vision and return the raw extraction
    mapping, with category VAT defaults filled in.
    Raises ExtractionError on any failure — the caller decides how to surface it.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY", "")
    if not api_key:
        raise ExtractionError("ANTHROPIC_API_KEY not set")

    vision_bytes, media_type = _prepare_image_for_vision(image_bytes)
    if media_type == "application/pdf":
        raise ExtractionError("PDF receipts are not supported — upload a photo")

    b64 = base64.standard_b64encode(vision_bytes).decode()
    logger.info("Sending %d KB b64 (%s) to Claude Vision", len(b64) // 1024, media_type)

    try:
        import anthropic
        client = anthropic.AsyncAnthropic(api_key=api_key)
        message = await client.messages.create(
            model=EXTRACTION_MODEL,
            max_tokens=4096,
            messages=[{
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": b64},
                    },
                    {"type": "text", "text": _build_prompt()},
                ],
            }],
        )
        data = parse_extraction_payload(message.content[0].text)
    except ExtractionError:
        raise
    except Exception as e:
        logger.error("Claude Vision extraction failed: %s", e)
        raise ExtractionError(str(e)) from e

    logger.info("Extracted %d items from receipt", len(data.get("items") or []))
    return apply_category_vat_defaults(data)
