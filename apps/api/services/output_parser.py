"""Parsing, repair and instrumentation of raw generator output."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from config import settings
from services.errors import MalformedOutputError

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Your game is ready!"
SCREENSHOT_MARKER = "data-playable-screenshot"
VALID_ESCAPES = set('"\\/bfnrtu')

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


class GeneratorPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = ""
    html: str = Field(default="", validation_alias=AliasChoices("html", "artifactBody", "artifact_body"))
    suggested_title: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("suggestedTitle", "suggested_title")
    )
    suggested_description: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("suggestedDescription", "suggested_description")
    )


@dataclass
class ParsedGame:
    message: str
    html: str
    suggested_title: Optional[str] = None
    suggested_description: Optional[str] = None
    repaired: bool = False


def strip_wrappers(raw: str) -> str:
    """Remove BOM, code fences and prose around the outermost JSON object."""
    text = (raw or "").lstrip("\ufeff").strip()
    text = _FENCE_OPEN.sub("", text, count=1)
    text = _FENCE_CLOSE.sub("", text).strip()
    if text.startswith("{"):
        end = text.rfind("}")
        return text[: end + 1] if end != -1 else text
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return ""
    return text[start : end + 1]


def normalize_escapes(text: str) -> str:
    """Double any backslash that does not begin a valid JSON escape. Valid JSON is unchanged."""
    out = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char != "\\":
            out.append(char)
            index += 1
            continue
        following = text[index + 1] if index + 1 < length else ""
        if following and following in VALID_ESCAPES:
            out.append(char + following)
            index += 2
        else:
            out.append("\\\\")
            index += 1
    return "".join(out)


def repair_json_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _TRAILING_COMMA.sub(r"\1", text)


def _validate(data: Any, repaired: bool) -> ParsedGame:
    if not isinstance(data, dict):
        raise MalformedOutputError("Generator output is not a JSON object.")
    try:
        payload = GeneratorPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedOutputError(f"Generator output has the wrong shape: {exc.error_count()} errors") from exc
    if not payload.html.strip():
        raise MalformedOutputError("Generated JSON missing HTML property.")
    return ParsedGame(
        message=payload.message.strip() or DEFAULT_MESSAGE,
        html=payload.html,
        suggested_title=(payload.suggested_title or "").strip() or None,
        suggested_description=(payload.suggested_description or "").strip() or None,
        repaired=repaired,
    )


def parse_generator_output(raw: str) -> ParsedGame:
    """
    Turn raw generator text into a structured game payload.

    One strict parse after unwrapping, then one repair pass. Anything still
    unparseable fails closed with ``MalformedOutputError``; nothing partial is
    ever returned.
    """
    text = strip_wrappers(raw)
    if not text:
        logger.warning("Generator output is not JSON: %s", (raw or "")[:300])
        raise MalformedOutputError("AI returned invalid response format. Please try again.")

    text = normalize_escapes(text)
    try:
        return _validate(json.loads(text), repaired=False)
    except json.JSONDecodeError as exc:
        logger.info("Strict parse failed at position %s, attempting repair", exc.pos)

    try:
        return _validate(json.loads(repair_json_text(text), strict=False), repaired=True)
    except json.JSONDecodeError as exc:
        logger.warning("Generator output could not be repaired: %s; sample=%s", exc, text[:300])
        raise MalformedOutputError(
            "Failed to parse AI response. The AI returned malformed JSON. Please try again."
        ) from exc


def screenshot_script(delay_ms: Optional[int] = None) -> str:
    delay = max(int(delay_ms if delay_ms is not None else settings.SCREENSHOT_DELAY_MS), 0)
    return f"""
<script {SCREENSHOT_MARKER}>
(function() {{
  setTimeout(function() {{
    try {{
      const canvas = document.querySelector('canvas');
      if (canvas) {{
        const dataUrl = canvas.toDataURL('image/jpeg', 0.5);
        window.parent.postMessage({{ type: 'SCREENSHOT', image: dataUrl }}, '*');
      }}
    }} catch(e) {{
      console.error('Screenshot capture failed:', e);
    }}
  }}, {delay});
}})();
</script>
"""


def inject_screenshot_script(html: str, delay_ms: Optional[int] = None) -> str:
    """Insert the capture script before the last closing body tag, or append it."""
    if SCREENSHOT_MARKER in html:
        return html
    script = screenshot_script(delay_ms)
    position = html.lower().rfind("</body>")
    if position == -1:
        return html + script
    return html[:position] + script + html[position:]
