import json
import logging
import re
from typing import Any

from app.core.config import settings as core_settings
from app.services.transcription import openai_client


logger = logging.getLogger(__name__)

CALL_TYPES = {"shipper_call", "carrier_call", "check_call", "unknown"}
SENTIMENTS = {"positive", "neutral", "negative"}
EQUIPMENT_TYPES = {
    "dry_van",
    "reefer",
    "flatbed",
    "step_deck",
    "rgn",
    "power_only",
    "box_truck",
    "hotshot",
    "tanker",
    "lowboy",
    "double_drop",
    "conestoga",
    "other",
}
DEFAULT_CONFIDENCE = 0.9
FREIGHT_SECTIONS = ("shipper_data", "carrier_data", "check_call_data")
MAX_TRANSCRIPT_CHARS = 60000

SYSTEM_PROMPT = (
    "You are a freight broker assistant that extracts actionable data from broker phone calls. "
    "Focus only on freight operational data (locations, rates, equipment, dates), "
    "action items, next steps in the load process, and a 2-3 sentence summary capturing tone, "
    "relationship context, red flags and leverage points. "
    "Do not extract sales metrics or competitive intelligence. "
    "Extract only clearly stated information and return only valid JSON."
)


def _extract_json_object(payload: str) -> dict | None:
    if not payload:
        return None
    try:
        parsed = json.loads(payload)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{[\s\S]*\}", payload)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _user_prompt(transcript: str, customer_name: str | None, template_fields: list[dict] | None) -> str:
    parts = [
        "Extract freight broker data from this call transcript.",
        "",
        "TRANSCRIPT:",
        transcript[:MAX_TRANSCRIPT_CHARS],
        "",
    ]
    if customer_name:
        parts.append(f"Customer/Company: {customer_name}")
    parts.append(
        "Return a JSON object with keys: "
        'call_type ("shipper_call" | "carrier_call" | "check_call" | "unknown"), '
        "summary (2-3 sentences), "
        'sentiment ("positive" | "neutral" | "negative"), '
        "key_points (array of strings), action_items (array), next_steps (array), "
        "shipper_data (object, shipper calls), carrier_data (object, carrier calls), "
        "check_call_data (object, check calls), "
        'lane ({"origin": "city, state", "destination": "city, state"}), '
        "rate_discussed (number or null), equipment_discussed "
        f"(one of {', '.join(sorted(EQUIPMENT_TYPES))} or null)."
    )
    parts.append("Use YYYY-MM-DD for dates. Include all phone, MC and reference numbers mentioned.")
    if template_fields:
        names = ", ".join(str(field.get("name") or field.get("field_name")) for field in template_fields)
        parts.append(f"Also return custom_fields: an object with these keys (null when not mentioned): {names}.")
    return "\n".join(parts)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value)]


def normalize_extraction(raw: dict | None) -> dict[str, Any]:
    data = dict(raw or {})

    call_type = str(data.get("call_type") or "unknown").strip().lower()
    sentiment = str(data.get("sentiment") or "neutral").strip().lower()
    equipment = data.get("equipment_discussed")
    if equipment is not None:
        equipment = str(equipment).strip().lower().replace(" ", "_")
        if equipment not in EQUIPMENT_TYPES:
            equipment = "other"

    rate = data.get("rate_discussed")
    try:
        rate = float(str(rate).replace("$", "").replace(",", "")) if rate not in (None, "") else None
    except (TypeError, ValueError):
        rate = None

    normalized: dict[str, Any] = {
        "call_type": call_type if call_type in CALL_TYPES else "unknown",
        "summary": str(data.get("summary") or "").strip(),
        "sentiment": sentiment if sentiment in SENTIMENTS else "neutral",
        "key_points": _as_list(data.get("key_points")),
        "action_items": _as_list(data.get("action_items")),
        "next_steps": _as_list(data.get("next_steps")),
        "lane": data.get("lane") if isinstance(data.get("lane"), dict) else None,
        "rate_discussed": rate,
        "equipment_discussed": equipment,
        "custom_fields": data.get("custom_fields") if isinstance(data.get("custom_fields"), dict) else {},
    }
    for section in FREIGHT_SECTIONS:
        value = data.get(section)
        normalized[section] = value if isinstance(value, dict) else None
    return normalized


def extract_freight_data(
    transcript: str,
    *,
    customer_name: str | None = None,
    template_fields: list[dict] | None = None,
) -> dict[str, Any]:
    if not (transcript or "").strip():
        return normalize_extraction({})

    client = openai_client()
    response = client.chat.completions.create(
        model=core_settings.OPENAI_MODEL,
        temperature=0.1,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": _user_prompt(transcript, customer_name, template_fields)},
        ],
    )
    content = response.choices[0].message.content or ""
    parsed = _extract_json_object(content)
    if parsed is None:
        logger.warning("extraction: model returned non-JSON content chars=%s", len(content))
    result = normalize_extraction(parsed)
    logger.info(
        "extraction: call_type=%s sentiment=%s action_items=%s",
        result["call_type"],
        result["sentiment"],
        len(result["action_items"]),
    )
    return result


def _stringify(value: Any) -> str | None:
    if value is None or value == "" or value == [] or value == {}:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def extraction_to_fields(extraction: dict[str, Any]) -> list[dict[str, Any]]:
    """Flattens an extraction into call_fields rows: {field_name, field_value, source}."""
    rows: list[dict[str, Any]] = []

    def add(name: str, value: Any, source: str = "ai") -> None:
        text_value = _stringify(value)
        if text_value is not None:
            rows.append({"field_name": name, "field_value": text_value, "source": source})

    for name in ("summary", "call_type", "sentiment", "key_points", "action_items", "next_steps"):
        add(name, extraction.get(name))

    for section in FREIGHT_SECTIONS:
        for name, value in (extraction.get(section) or {}).items():
            add(str(name), value)

    lane = extraction.get("lane") or {}
    add("lane_origin", lane.get("origin"))
    add("lane_destination", lane.get("destination"))
    add("rate_discussed", extraction.get("rate_discussed"))
    add("equipment_discussed", extraction.get("equipment_discussed"))

    for name, value in (extraction.get("custom_fields") or {}).items():
        add(str(name), value, source="template")

    seen: set[str] = set()
    unique_rows = []
    for row in rows:
        if row["field_name"] in seen:
            continue
        seen.add(row["field_name"])
        unique_rows.append(row)
    return unique_rows
