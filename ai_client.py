from dotenv import load_dotenv
load_dotenv()

from fastapi import HTTPException
from PIL import Image, UnidentifiedImageError
from typing import Tuple
import base64, io, json, os, re

# ---------------- Claude (quote) + OpenAI (render) client setup ----------------
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5-20250929")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
CLAUDE_RESPONSE_MAX_TOKENS = int(os.getenv("CLAUDE_RESPONSE_MAX_TOKENS", "8192"))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
RENDER_MODEL = os.getenv("RENDER_MODEL", "gpt-image-1")
RENDER_SIZE = os.getenv("RENDER_SIZE", "1536x1024")

IMAGE_MAX_EDGE = int(os.getenv("IMAGE_MAX_EDGE", "2048"))

print("DEBUG[config]: CLAUDE_MODEL =", CLAUDE_MODEL)
print("DEBUG[config]: ANTHROPIC_API_KEY present:", bool(ANTHROPIC_API_KEY))
print("DEBUG[config]: RENDER_MODEL =", RENDER_MODEL, "RENDER_SIZE =", RENDER_SIZE)
print("DEBUG[config]: OPENAI_API_KEY present:", bool(OPENAI_API_KEY))

_anthropic_client = None
try:
    import anthropic
    _anthropic_client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None
    print("DEBUG[config]: Anthropic client initialized:", bool(_anthropic_client))
except Exception as e:
    print("DEBUG[config]: Error initializing Anthropic client:", e)
    _anthropic_client = None

_openai_client = None
try:
    from openai import OpenAI
    _openai_client = OpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None
    print("DEBUG[config]: OpenAI client initialized:", bool(_openai_client))
except Exception as e:
    print("DEBUG[config]: Error initializing OpenAI client:", e)
    _openai_client = None

ACCEPTED_FORMATS = {"PNG": "image/png", "JPEG": "image/jpeg"}

# ---------------- Helpers ----------------
def _coerce_json(text: str):
    if not text:
        return {}
    s = str(text).strip()
    if s.startswith("```"):
        s = re.sub(r"^```[\w-]*\s*", "", s)
        s = re.sub(r"\s*```$", "", s)
    try:
        return json.loads(s)
    except ValueError:
        pass
    m = re.search(r"(\{.*\}|\[.*\])", s, re.S)
    if m:
        try:
            return json.loads(m.group(1))
        except ValueError:
            return {}
    return {}

def data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

def parse_data_uri(uri: str) -> Tuple[bytes, str]:
    m = re.match(r"^data:([\w/+.-]+);base64,(.*)$", uri or "", re.S)
    if not m:
        raise ValueError("Not a base64 data URI")
    return base64.b64decode(m.group(2)), m.group(1)

# ---------------- Image preparation ----------------
def prepare_image(file_bytes: bytes) -> Tuple[bytes, str]:
    """
    Returns: (image_bytes, mime_type)
    Accepts PNG/JPEG only; anything with a longest edge over IMAGE_MAX_EDGE is downscaled.
    """
    try:
        image = Image.open(io.BytesIO(file_bytes))
        fmt = image.format
    except (UnidentifiedImageError, OSError) as e:
        print("DEBUG[prepare_image]: unreadable image:", e)
        raise HTTPException(status_code=400, detail="Please upload a PNG or JPEG photo.")

    mime = ACCEPTED_FORMATS.get(fmt or "")
    if not mime:
        print("DEBUG[prepare_image]: rejected format:", fmt)
        raise HTTPException(status_code=400, detail="Please upload a PNG or JPEG photo.")

    w, h = image.size
    if max(w, h) <= IMAGE_MAX_EDGE:
        return file_bytes, mime

    image.thumbnail((IMAGE_MAX_EDGE, IMAGE_MAX_EDGE))
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    out = io.BytesIO()
    image.save(out, format=fmt)
    print(f"DEBUG[prepare_image]: downscaled {w}x{h} -> {image.size[0]}x{image.size[1]}")
    return out.getvalue(), mime

# ---------------- Quote prompt ----------------
QUOTE_SYSTEM_PROMPT = """
You are an expert renovation contractor producing line-item labor quotes.

Rules:
- Before providing rates, analyze current, typical labor costs for licensed and insured tradespeople in the given metropolitan area. Rates must be realistic and competitive for that locale.
- The quote is for LABOR AND INSTALLATION ONLY. Cover standard consumables (screws, caulk, tape) but exclude the cost of major materials (flooring, paint, tile, fixtures).
- Give quantities (sq ft, linear ft, count), a unit, a unit rate and a line total for every task.
- The summary must include a disclaimer stating this is a labor-only quote that does not include major materials.

Output JSON ONLY:
{
  "line_items": [
    {
      "item": "<description of the task>",
      "quantity": <number>,
      "unit": "sqft" | "lf" | "each" | "<other unit>",
      "rate": <labor cost per unit>,
      "total": <line total>
    }
  ],
  "summary": {
    "subtotal": <number>,
    "overhead": <number>,
    "contingency": <number>,
    "tax": <number>,
    "grand_total": <number>,
    "disclaimer": "<labor-only disclaimer>"
  }
}
"""

def build_quote_prompt(
    room_type: str,
    region_label: str,
    scope: str,
    overhead_percent: float,
    contingency_percent: float,
    tax_percent: float,
) -> str:
    return f"""Analyze the attached image of a {room_type} and the following scope of work to create a detailed line-item quote.

Metropolitan area: {region_label}
Scope of work: "{scope}"

Calculate the summary with {overhead_percent:g}% overhead, {contingency_percent:g}% contingency and {tax_percent:g}% local sales tax for {region_label}.
"""

def request_quote(
    image_bytes: bytes,
    mime: str,
    room_type: str,
    region_label: str,
    scope: str,
    overhead_percent: float,
    contingency_percent: float,
    tax_percent: float,
) -> dict:
    if not ANTHROPIC_API_KEY or not _anthropic_client:
        raise RuntimeError("Anthropic API not configured")

    user_text = build_quote_prompt(room_type, region_label, scope, overhead_percent, contingency_percent, tax_percent)
    resp = _anthropic_client.messages.create(
        model=CLAUDE_MODEL,
        max_tokens=CLAUDE_RESPONSE_MAX_TOKENS,
        temperature=0,
        system=QUOTE_SYSTEM_PROMPT,
        messages=[{
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime, "data": base64.b64encode(image_bytes).decode("ascii")},
                },
                {"type": "text", "text": user_text},
            ],
        }],
    )
    raw = resp.content[0].text if resp.content else ""
    print("\n=== DEBUG: Raw Claude Quote (first 900 chars) ===")
    print(raw[:900])
    print("=" * 50)
    parsed = _coerce_json(raw)
    if not isinstance(parsed, dict) or not parsed:
        raise ValueError("The model did not return a usable quote.")
    return parsed

# ---------------- Render prompt ----------------
STYLE_DETAILS = {
    "Modern": "clean lines, flat-panel cabinetry, matte black or brushed hardware, neutral palette with warm wood accents",
    "Scandinavian": "light oak, white walls, soft textiles, minimal clutter, abundant natural light",
    "Farmhouse": "shiplap, rustic wood, shaker doors, apron sinks, warm neutral colors",
    "Industrial": "exposed brick or concrete, metal fixtures, dark tones, raw materials",
    "Transitional": "mix of classic and contemporary, soft greys and whites, simple trim profiles",
    "Coastal": "blue and white palette, natural textures like rattan and jute, light and airy",
}

def build_render_prompt(room_type: str, region_label: str, scope: str, style: str) -> str:
    return f"""Photorealistic "after" photograph of this exact {room_type.lower()} once the renovation is complete.

Keep the same camera angle, room geometry, windows and doors as the original photo.
Renovation scope: {scope}
Style: {style} - {STYLE_DETAILS.get(style, style)}
Finishes typical of a renovation in {region_label}.

Professional interior photography, natural lighting, realistic materials.
NO people, NO text, NO watermarks, NO logos."""

def request_render(
    image_bytes: bytes,
    mime: str,
    room_type: str,
    region_label: str,
    scope: str,
    style: str,
) -> str:
    """Returns the rendered image as a data URI."""
    if not OPENAI_API_KEY or not _openai_client:
        raise RuntimeError("OpenAI API not configured")

    ext = "png" if mime == "image/png" else "jpg"
    resp = _openai_client.images.edit(
        model=RENDER_MODEL,
        image=(f"room.{ext}", image_bytes, mime),
        prompt=build_render_prompt(room_type, region_label, scope, style),
        size=RENDER_SIZE,
    )
    b64 = resp.data[0].b64_json if resp.data else None
    if not b64:
        raise ValueError("The rendering service returned no image.")
    print("DEBUG[request_render]: received image b64 chars:", len(b64))
    return f"data:image/png;base64,{b64}"
