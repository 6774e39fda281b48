"""Two-call LLM generation: listing text -> one-pager site config.

Call 1 turns the scraped listing into the full config (everything except the
marketing copy). Call 2 writes a lifestyle title and six highlights from the
Call 1 output. Both calls record their timing and token usage under the
``_metadata`` key of the stored JSON so progress can be derived from the
record alone.
"""

import json
import logging

from ottie import config
from ottie.database import get_preview, update_preview, utcnow
from ottie.llm import extract_json, get_client
from ottie.scraper.normalize import format_json_to_text

log = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """An LLM call failed or returned something unusable."""


# Keys Call 2 owns; Call 1 is never asked for them
CALL2_KEYS = ("title", "subtitle", "highlights")
MAX_HIGHLIGHTS = 6


# ── Call 1 prompt ─────────────────────────────────────────────────────────

SYSTEM_MESSAGE = """You are an AI assistant inside a SaaS tool that generates real estate one-pager websites.

ROLE:
- Analyze LLM-ready markdown of property listings
- Produce clean, structured JSON configs that can be rendered directly into a one-pager

BEHAVIOR:
- Return VALID JSON only
- No markdown, no code fences, no commentary
- Fill only the fields of the given structure
- Do not invent facts that are not in the listing
- Ignore navigation, similar properties, ads and footers
- Prefer conservative defaults when unsure"""

CONFIG_PROMPT = """Analyze the real estate listing below and fill the JSON config for a one-pager.

PRIORITY FIELDS:
1. language: ISO 2-letter code (en, es, de, cs, sk, fr, it). Write ALL text fields in this language.
2. currency: infer from symbol or location ($ -> USD, € -> EUR, £ -> GBP, Kč -> CZK)
3. price_info: numbers only, no currency symbols
4. photos
5. beds, baths, living_area
6. description: exactly as written in the listing
7. address
8. agent
9. property_type: one of HOUSE, TOWNHOUSE, CONDO, LAND, MULTI_FAMILY, MOBILE_HOME, APARTMENT, FARM_RANCH, OTHER
10. property_status: one of FOR_SALE, FOR_RENT, SOLD, UNDER_CONTRACT, PENDING, OFF_MARKET, OTHER

RULES:
- Missing values: "" for text, 0 for numbers, [] for lists
- Never hallucinate values that are not in the data
- floorplan_url: links labelled "Floor plan", "Plans" or "Grundriss"
- Detect the language from the listing text
- mortgage_info.interest_rate is a percentage
- Units never contain a currency
- Guess address.country from the address and the language when not stated
- photos: an EXHAUSTIVE list of the listing gallery, at most {max_photos}, in page order.
  Prefer the highest resolution variant (href over src, ".w1200.", "full", "large").
  Keep only URLs that share the main gallery's base pattern.
- agent.agency is the brokerage, never the listing portal

JSON STRUCTURE:
{structure}

DATA TO PROCESS:
{data}"""


def build_config_prompt(text: str, sample: dict | None = None) -> str:
    """Call 1 user prompt: rules, the config structure (minus Call 2 keys) and the listing text."""
    if sample is None:
        sample = config.load_sample_config()
    structure = {k: v for k, v in sample.items() if k not in CALL2_KEYS}
    return CONFIG_PROMPT.format(
        max_photos=config.DEFAULTS["max_photos"],
        structure=json.dumps(structure, indent=2, ensure_ascii=False),
        data=text,
    )


# ── Call 2 prompt ─────────────────────────────────────────────────────────

# Icon vocabulary for highlights (Phosphor icon names)
ICON_CATEGORIES: dict[str, dict] = {
    "location": {"label": "Location & Area",
                 "icons": ["MapPin", "Compass", "GlobeHemisphereWest", "SignpostTwo", "MapTrifold"]},
    "view": {"label": "Views & Scenery",
             "icons": ["Mountains", "SunHorizon", "Tree", "Wave", "Binoculars"]},
    "bedroom": {"label": "Bedrooms", "icons": ["Bed", "Door"]},
    "bathroom": {"label": "Bathrooms", "icons": ["Toilet", "Bathtub", "Shower", "Sink"]},
    "kitchen": {"label": "Kitchen", "icons": ["Fridge", "CookingPot", "KnifeFork", "Microwave"]},
    "luxury": {"label": "Luxury & Premium",
               "icons": ["Crown", "Diamond", "Sparkle", "Asterisk", "SparkleStar"]},
    "pool": {"label": "Pool & Water", "icons": ["SwimmingPool", "WaveSawtooth", "Water", "Droplet"]},
    "parking": {"label": "Parking", "icons": ["CarSimple", "Garage", "ParkingCircle", "Car"]},
    "outdoor": {"label": "Outdoor & Garden",
                "icons": ["Tree", "Flower", "PottedPlant", "Fence", "Gate"]},
    "security": {"label": "Security & Safety", "icons": ["ShieldCheck", "Lock", "Camera", "Alarm"]},
    "heating_cooling": {"label": "Climate Control",
                        "icons": ["Thermometer", "Fan", "AirVent", "Sun", "Snowflake"]},
    "energy": {"label": "Energy & Utilities",
               "icons": ["SolarPanel", "Lightning", "Battery", "Windmill"]},
    "price": {"label": "Price & Financial",
              "icons": ["CurrencyDollar", "CurrencyEur", "CurrencyPound", "Coin", "Receipt"]},
    "size": {"label": "Size & Measurements", "icons": ["Ruler", "Square", "Resize", "ArrowsOut"]},
    "elevator": {"label": "Elevator & Accessibility",
                 "icons": ["Elevator", "Wheelchair", "Accessibility"]},
    "building": {"label": "Building & Structure",
                 "icons": ["House", "Building", "Construction", "CastleTurret", "Skyscraper"]},
    "appliances": {"label": "Appliances & Furniture",
                   "icons": ["Sofa", "Chair", "Table", "Lamp", "Desk"]},
    "storage": {"label": "Storage & Space", "icons": ["Wardrobe", "Bookshelf", "Box", "Folder"]},
    "distance": {"label": "Proximity & Distance",
                 "icons": ["MapPin", "Distance", "NavigationArrow", "Signpost"]},
    "trending": {"label": "Trending & Popular",
                 "icons": ["TrendingUp", "Fire", "Heart", "Star", "Bolt"]},
    "miscellaneous": {"label": "General", "icons": ["Check", "Plus", "Info", "CheckCircle"]},
}

TITLE_PROMPT = """Generate a SINGLE lifestyle-focused title and exactly 6 highlights for this property.
Write everything in the language given as "Language" in the property data.

TITLE:
- Exactly one title, at most 60 characters
- Emotional and lifestyle driven: what it feels like to live here
- No dry spec titles ("3 bed house for sale") and no generic phrases ("Beautiful home")

HIGHLIGHTS:
- Exactly 6 items
- title: 2-5 words
- value: a short concrete fact from the data
- icon: one Phosphor icon name from the categories below
- Do not repeat the title in the highlights

ICON CATEGORIES:
{icons}
{current}
PROPERTY DATA (from first call):
{data}

OUTPUT:
Return only this JSON, no explanations:
{{"title": "...", "highlights": [{{"title": "...", "value": "...", "icon": "..."}}]}}"""


def build_title_prompt(property_text: str, current_title: str | None = None,
                       current_highlights: list | None = None) -> str:
    """Call 2 user prompt. Existing copy, when given, is offered for improvement."""
    current = ""
    if current_title:
        current += f"\nCURRENT TITLE (optional to improve):\n{current_title}\n"
    if current_highlights:
        current += ("\nCURRENT HIGHLIGHTS (optional to improve):\n"
                    + json.dumps(current_highlights, indent=2, ensure_ascii=False) + "\n")
    return TITLE_PROMPT.format(
        icons=json.dumps(ICON_CATEGORIES, indent=2),
        current=current,
        data=property_text,
    )


# ── Key ordering ──────────────────────────────────────────────────────────

def sort_config_to_sample_order(cfg, sample=None):
    """Reorder config keys to follow the reference config.

    Keys known to the reference come first in its order, unknown keys follow
    in the order the model produced them. Nested objects are ordered the same
    way; lists of objects use the reference's first element as template.
    Values are never changed.
    """
    if sample is None:
        sample = config.load_sample_config()

    if isinstance(cfg, list):
        template = sample[0] if isinstance(sample, list) and sample else None
        return [sort_config_to_sample_order(item, template) if isinstance(item, dict) else item
                for item in cfg]
    if not isinstance(cfg, dict):
        return cfg

    template = sample if isinstance(sample, dict) else {}
    ordered = {}
    for key in template:
        if key in cfg:
            ordered[key] = sort_config_to_sample_order(cfg[key], template[key])
    for key, value in cfg.items():
        if key not in ordered:
            ordered[key] = value
    return ordered


# ── Call 2 input ──────────────────────────────────────────────────────────

def relevant_title_data(cfg: dict) -> dict:
    """The subset of a Call 1 config that Call 2 works from, with defaults filled in."""
    return {
        "language": cfg.get("language") or "",
        "title": cfg.get("title") or "",
        "address": cfg.get("address") or {},
        "beds": cfg.get("beds") or 0,
        "baths": cfg.get("baths") or 0,
        "property_type": cfg.get("property_type") or "OTHER",
        "year_built": cfg.get("year_built") or 0,
        "living_area": cfg.get("living_area") or {},
        "lot_size": cfg.get("lot_size") or {},
        "description": cfg.get("description") or "",
        "features_amenities": cfg.get("features_amenities") or {},
        "highlights": cfg.get("highlights") or [],
    }


def _number(value) -> float:
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def _plural(count, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _feature_list(fa: dict) -> list[str]:
    def section(name: str) -> dict:
        value = fa.get(name)
        return value if isinstance(value, dict) else {}

    def items(value) -> list[str]:
        return [str(v) for v in value if v] if isinstance(value, list) else []

    interior, outdoor = section("interior"), section("outdoor")
    parking, building, energy = section("parking"), section("building"), section("energy")

    features: list[str] = []
    if fa.get("pool"):
        features.append("Pool")
    if outdoor.get("pool"):
        features.append("Pool")
    if outdoor.get("balcony_terrace"):
        features.append("Balcony/Terrace")
    if outdoor.get("garden"):
        features.append("Garden")
    features += items(outdoor.get("amenities"))
    if interior.get("fireplace"):
        features.append("Fireplace")
    features += items(interior.get("kitchen_features"))
    features += items(fa.get("appliances"))
    if parking.get("type"):
        features.append(f"Parking: {parking['type']}")
    if building.get("elevator"):
        features.append("Elevator")
    if energy.get("solar"):
        features.append("Solar")
    if energy.get("ev_charger"):
        features.append("EV Charger")
    return features


def format_property_data_for_title(data: dict) -> str:
    """Render relevant_title_data() output as the plain text Call 2 reads."""
    lines: list[str] = []

    if data.get("language"):
        lines.append(f"Language: {data['language']}")
    if data.get("title"):
        lines.append(f"Current Title: {data['title']}")

    address = data.get("address") or {}
    if isinstance(address, dict):
        parts = [str(address[k]) for k in
                 ("street", "city", "neighborhood", "state", "zipcode", "country", "subdivision")
                 if address.get(k)]
        if parts:
            lines.append("Address: " + ", ".join(parts))

    beds, baths = data.get("beds"), data.get("baths")
    specs = []
    if beds:
        specs.append(_plural(beds, "bed"))
    if baths:
        specs.append(_plural(baths, "bath"))
    if specs:
        lines.append(f"Property: {', '.join(specs)} - {data.get('property_type') or 'OTHER'}")

    if _number(data.get("year_built")) > 0:
        lines.append(f"Year Built: {data['year_built']}")

    for label, key in (("Living Area", "living_area"), ("Lot Size", "lot_size")):
        area = data.get(key) or {}
        if isinstance(area, dict) and _number(area.get("value")) > 0:
            lines.append(f"{label}: {area['value']} {area.get('unit') or 'sqft'}")

    if data.get("description"):
        lines += ["", "Description:", str(data["description"])]

    fa = data.get("features_amenities")
    if isinstance(fa, dict):
        features = _feature_list(fa)
        if features:
            lines += ["", "Features & Amenities:"]
            lines += [f"- {f}" for f in features]

    highlights = data.get("highlights")
    if isinstance(highlights, list) and highlights:
        lines += ["", "Current Highlights (for improvement):"]
        for i, h in enumerate(highlights, 1):
            h = h if isinstance(h, dict) else {}
            lines.append(f"{i}. {h.get('title') or ''}: {h.get('value') or ''}")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

def _strip_metadata(cfg: dict) -> tuple[dict, dict]:
    body = {k: v for k, v in cfg.items() if k != "_metadata"}
    meta = cfg.get("_metadata") if isinstance(cfg.get("_metadata"), dict) else {}
    return body, dict(meta)


def _with_markers(record: dict, metadata: dict) -> dict:
    """unified_json with fresh call metadata, keeping whatever config it already holds."""
    current = record.get("unified_json")
    body, _ = _strip_metadata(current if isinstance(current, dict) else {})
    return {**body, "_metadata": dict(metadata)}


def _parse_object(text: str, call: str) -> dict:
    try:
        parsed = extract_json(text)
    except json.JSONDecodeError as e:
        raise GenerationError(f"{call}: model returned invalid JSON") from e
    if not isinstance(parsed, dict):
        raise GenerationError(f"{call}: model returned {type(parsed).__name__}, expected an object")
    return parsed


def call1_input(record: dict) -> str:
    """Listing text Call 1 reads: formatted scraper JSON if present, else the markdown.

    Raises:
        GenerationError: If the record holds neither.
    """
    scraped = record.get("scraped_data")
    if isinstance(scraped, dict) and scraped.get("data"):
        return format_json_to_text(scraped["data"])
    markdown = record.get("markdown")
    if markdown and markdown.strip():
        return markdown
    raise GenerationError("No scraped content to generate from. Re-run the scrape first.")


def run_call1(preview_id: str, client=None, db_path=None) -> dict:
    """Generate the base config for a preview and store it.

    Writes ``call1_started_at`` before the request; on success writes the
    sorted config to both generated_config and unified_json, with the full
    Call 1 metadata, in one update.

    Returns:
        The generated config (without metadata).

    Raises:
        GenerationError: On missing input, LLM failure or an unusable response.
        KeyError: If the preview does not exist.
    """
    record = get_preview(preview_id, db_path)
    if record is None:
        raise KeyError(preview_id)
    text = call1_input(record)
    client = client or get_client()

    started = utcnow()
    update_preview(preview_id, db_path,
                   unified_json=_with_markers(record, {"call1_started_at": started}))
    log.info("[%s] Call 1: generating config from %d chars", preview_id[:8], len(text))

    messages = [
        {"role": "system", "content": SYSTEM_MESSAGE},
        {"role": "user", "content": build_config_prompt(text)},
    ]
    try:
        response = client.chat(messages, temperature=config.DEFAULTS["call1_temperature"],
                               max_tokens=8192, json_mode=True)
    except Exception as e:
        log.error("LLM error in Call 1 for %s: %s", preview_id[:8], e)
        raise GenerationError(f"Config generation failed: {e}") from e

    generated = sort_config_to_sample_order(_parse_object(response.text, "Call 1"))
    metadata = {
        "call1_started_at": started,
        "call1_completed_at": utcnow(),
        "call1_duration_ms": response.duration_ms,
        "call1_usage": response.usage,
    }
    update_preview(
        preview_id, db_path,
        generated_config={**generated, "_metadata": metadata},
        unified_json={**generated, "_metadata": dict(metadata)},
    )
    log.info("[%s] Call 1 done in %dms", preview_id[:8], response.duration_ms)
    return generated


def _validate_title_response(parsed: dict) -> tuple[str, list]:
    title = parsed.get("title")
    if not isinstance(title, str) or not title.strip():
        raise GenerationError("Invalid JSON: missing or invalid title field")
    highlights = parsed.get("highlights")
    if not isinstance(highlights, list):
        raise GenerationError("Invalid JSON: missing or invalid highlights field")
    return title.strip(), highlights[:MAX_HIGHLIGHTS]


def run_call2(preview_id: str, client=None, db_path=None) -> dict:
    """Write the title and highlights for a preview and mark it completed.

    Only ``title`` and ``highlights`` are taken from the response; every other
    field of the Call 1 config is carried over unchanged.

    Returns:
        The final config (without metadata).

    Raises:
        GenerationError: If Call 1 output is missing, the LLM fails or the
            response lacks a usable title or highlights list.
    """
    record = get_preview(preview_id, db_path)
    if record is None:
        raise KeyError(preview_id)
    generated = record.get("generated_config")
    if not isinstance(generated, dict) or not generated:
        raise GenerationError("No generated config found. Run config generation (Call 1) first.")
    client = client or get_client()

    base, metadata = _strip_metadata(generated)
    metadata["call2_started_at"] = utcnow()
    update_preview(preview_id, db_path, unified_json=_with_markers(record, metadata))

    prompt = build_title_prompt(format_property_data_for_title(relevant_title_data(base)))
    log.info("[%s] Call 2: generating title and highlights", preview_id[:8])
    try:
        response = client.chat([{"role": "user", "content": prompt}],
                               temperature=config.DEFAULTS["call2_temperature"],
                               max_tokens=2048, json_mode=True)
    except Exception as e:
        log.error("LLM error in Call 2 for %s: %s", preview_id[:8], e)
        raise GenerationError(f"Title generation failed: {e}") from e

    title, highlights = _validate_title_response(_parse_object(response.text, "Call 2"))

    final = dict(base)
    final["title"] = title
    final["highlights"] = highlights
    final = sort_config_to_sample_order(final)

    metadata.update({
        "call2_completed_at": utcnow(),
        "call2_duration_ms": response.duration_ms,
        "call2_usage": response.usage,
    })
    update_preview(preview_id, db_path, unified_json={**final, "_metadata": metadata},
                   status="completed")
    log.info("[%s] Call 2 done: %r (%d highlights)", preview_id[:8], title, len(highlights))
    return final
