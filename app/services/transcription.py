import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests
from openai import OpenAI

from app.core.config import settings as core_settings


logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 120


class TranscriptionConfigError(RuntimeError):
    pass


@dataclass
class TranscriptionResult:
    text: str
    language: str | None = None
    duration_seconds: float = 0.0
    segments: list[dict[str, Any]] = field(default_factory=list)


def openai_client() -> OpenAI:
    api_key = (core_settings.OPENAI_API_KEY or "").strip()
    if not api_key:
        raise TranscriptionConfigError("OPENAI_API_KEY is not configured")
    return OpenAI(api_key=api_key)


def _segment_to_dict(segment: Any) -> dict[str, Any]:
    if isinstance(segment, dict):
        source = segment
    elif hasattr(segment, "model_dump"):
        source = segment.model_dump()
    else:
        source = {key: getattr(segment, key, None) for key in ("start", "end", "text")}
    return {
        "start": float(source.get("start") or 0),
        "end": float(source.get("end") or 0),
        "text": str(source.get("text") or "").strip(),
    }


def _to_result(response: Any) -> TranscriptionResult:
    segments = [_segment_to_dict(segment) for segment in (getattr(response, "segments", None) or [])]
    duration = getattr(response, "duration", None)
    if duration is None and segments:
        duration = segments[-1]["end"]
    return TranscriptionResult(
        text=(getattr(response, "text", "") or "").strip(),
        language=getattr(response, "language", None),
        duration_seconds=float(duration or 0),
        segments=segments,
    )


def transcribe_bytes(audio_bytes: bytes, *, file_name: str = "recording.mp3") -> TranscriptionResult:
    client = openai_client()
    response = client.audio.transcriptions.create(
        model=core_settings.OPENAI_TRANSCRIPTION_MODEL,
        file=(file_name, audio_bytes),
        response_format="verbose_json",
    )
    result = _to_result(response)
    logger.info(
        "transcription: done file=%s chars=%s duration=%.1fs",
        file_name,
        len(result.text),
        result.duration_seconds,
    )
    return result


def transcribe_file(path: str | Path) -> TranscriptionResult:
    source = Path(path)
    return transcribe_bytes(source.read_bytes(), file_name=source.name)


def download_recording(url: str) -> bytes:
    """Twilio recording URLs need basic auth with the account credentials."""
    auth = None
    if "twilio.com" in (url or "") and core_settings.TWILIO_ACCOUNT_SID:
        auth = (core_settings.TWILIO_ACCOUNT_SID, core_settings.TWILIO_AUTH_TOKEN)
    response = requests.get(url, auth=auth, timeout=DOWNLOAD_TIMEOUT_SECONDS)
    response.raise_for_status()
    return response.content


def transcribe_url(url: str, *, file_name: str = "recording.mp3") -> TranscriptionResult:
    return transcribe_bytes(download_recording(url), file_name=file_name)


def format_conversation(segments: list[dict[str, Any]]) -> str:
    lines = []
    for segment in segments or []:
        text = (segment.get("text") or "").strip()
        if not text:
            continue
        start = int(segment.get("start") or 0)
        lines.append(f"[{start // 60:02d}:{start % 60:02d}] {text}")
    return "\n".join(lines)
