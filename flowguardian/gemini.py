import logging
import re
import time
from typing import Any, List, Optional, Sequence

import requests
from pydantic import ValidationError

from flowguardian.exceptions import SchemaError, ServiceError
from flowguardian.schemas import (
    AnalysisRequest,
    ConfidenceTier,
    Detection,
    LeakReport,
    PressureReading,
    PressureTier,
)
from flowguardian.utils import encode_image_base64, guess_mime_type

logger = logging.getLogger(__name__)

SIGNIFICANT_DROP_PSI = 3.0
MODERATE_DROP_PSI = 1.5

PRESSURE_HINTS = {
    PressureTier.SIGNIFICANT: (
        "ALERT: Significant pressure drop detected (>3 PSI) - "
        "Actively search for visible leak evidence!"
    ),
    PressureTier.MODERATE: (
        "WARNING: Moderate pressure drop detected (>1.5 PSI) - "
        "Examine carefully for leaks."
    ),
    PressureTier.NORMAL: (
        "Normal pressure difference (<1.5 PSI) - "
        "Only flag OBVIOUS visible damage."
    ),
}

KEPT_CONFIDENCE = {ConfidenceTier.HIGH.value, ConfidenceTier.VERY_HIGH.value}

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*|\s*```\s*$")


# ----- Pressure context -----
def pressure_tier(diff: float) -> PressureTier:
    if diff > SIGNIFICANT_DROP_PSI:
        return PressureTier.SIGNIFICANT
    if diff > MODERATE_DROP_PSI:
        return PressureTier.MODERATE
    return PressureTier.NORMAL


def build_pressure_context(end1: Optional[float], end2: Optional[float]) -> str:
    """Describe the pressure readings for the prompt; empty if either is missing."""
    reading = PressureReading(end1=end1, end2=end2)
    diff = reading.diff
    if diff is None:
        return ""

    return (
        "SYSTEM PRESSURE DATA:\n"
        f"- End 1 Pressure: {reading.end1} PSI\n"
        f"- End 2 Pressure: {reading.end2} PSI\n"
        f"- Pressure Difference: {diff:.2f} PSI\n"
        "\n"
        f"{PRESSURE_HINTS[pressure_tier(diff)]}"
    )


# ----- Request composition -----
def build_leak_prompt(pressure_context: str = "") -> str:
    prompt_parts = [
        "You are an EXPERT water leak detection specialist with 20 years of experience. "
        "Your reputation depends on accuracy - false positives damage your credibility."
    ]

    if pressure_context:
        prompt_parts.append(pressure_context)

    prompt_parts.append(
        "TASK: Analyze this image with EXTREME scrutiny. ONLY flag areas with "
        "UNMISTAKABLE evidence of active or recent water damage."
    )
    prompt_parts.append(
        "ONLY DETECT IF YOU SEE:\n"
        "1. Active water: Visible dripping, pooling, or wet surfaces with clear moisture\n"
        "2. Water stains: Brown, yellow, or dark discoloration patches (NOT shadows or dirt)\n"
        "3. Structural damage: Warped drywall, peeling paint, bubbling surfaces caused by water\n"
        "4. Mold/mildew: Visible black, green, or white fuzzy growth in damp areas\n"
        "5. Ceiling damage: Sagging, rings, or clear water damage patterns"
    )
    prompt_parts.append(
        "DO NOT FLAG:\n"
        "- Normal shadows, lighting variations, or camera artifacts\n"
        "- Clean, dry surfaces even if oddly colored\n"
        "- Normal wear and tear, cracks, or aging (unless clearly water-related)\n"
        "- Dust, dirt, or stains that are clearly NOT water damage\n"
        "- Reflections, glare, or image compression artifacts\n"
        "- Construction materials or intentional design elements"
    )
    prompt_parts.append(
        "ACCURACY RULES:\n"
        '- Set confidence to "high" ONLY if you are 90%+ certain it\'s a real leak\n'
        '- Set confidence to "medium" if 70-89% certain (will be filtered out)\n'
        "- If you're less than 70% certain, DO NOT include it\n"
        "- Describe EXACTLY what you see that indicates water damage\n"
        "- Be conservative - when in doubt, leave it out"
    )
    prompt_parts.append(
        "RESPONSE FORMAT:\n"
        "Return ONLY valid JSON (no markdown, no code blocks, no explanations):\n"
        '{"leaks": [{"x": 150, "y": 200, "width": 80, "height": 60, '
        '"confidence": "high", '
        '"description": "brown water stain with visible drip marks on white ceiling", '
        '"evidence": "discoloration, staining pattern, structural damage"}]}\n'
        '\nIf NO clear leaks are visible, return: {"leaks": []}\n'
        "\nCoordinates must be in pixels from top-left corner (0,0)."
    )

    return "\n\n".join(prompt_parts)


def compose_request(image_bytes: bytes, pressure_context: str = "") -> AnalysisRequest:
    return AnalysisRequest(
        prompt=build_leak_prompt(pressure_context),
        pressure_context=pressure_context,
        image_base64=encode_image_base64(image_bytes),
        mime_type=guess_mime_type(image_bytes),
    )


# ----- Gemini call -----
def call_gemini(request: AnalysisRequest,
                api_key: str,
                api_url: str,
                timeout: float = 90.0,
                max_retries: int = 0,
                retry_delay: float = 1.0) -> Optional[str]:
    """Send the request to Gemini and return the text of the first candidate.

    Returns None when Gemini answers without any text. Raises ServiceError
    once every attempt failed on network errors, timeouts or non-2xx status.
    """
    params = {"key": api_key}
    headers = {"Content-Type": "application/json"}
    payload = request.to_payload()

    for attempt in range(max_retries + 1):
        try:
            response = requests.post(api_url, params=params, json=payload,
                                     headers=headers, timeout=timeout)
            response.raise_for_status()
            result = response.json()
            break
        except (requests.RequestException, ValueError) as e:
            if attempt >= max_retries:
                raise ServiceError(f"Gemini request failed: {e}") from e
            logger.warning(f"Gemini request failed (attempt {attempt + 1}/{max_retries + 1}): {e}")
            time.sleep(retry_delay)

    try:
        text = result["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) and text else None


# ----- Response interpretation -----
def strip_code_fences(text: str) -> str:
    """Remove markdown fences Gemini sometimes wraps around its JSON."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_leak_report(text: str) -> LeakReport:
    try:
        return LeakReport.model_validate_json(strip_code_fences(text))
    except ValidationError as e:
        raise SchemaError(f"Response is not a leak report: {e.error_count()} error(s)") from e


def interpret_response(text: Optional[str]) -> Optional[List[Any]]:
    """Return the raw leak entries, or None when the response is unusable."""
    if not text:
        logger.warning("No response from Gemini.")
        return None

    try:
        report = parse_leak_report(text)
    except SchemaError as e:
        logger.error(f"Failed to parse Gemini response as JSON: {e}")
        logger.error(f"Raw response: {text}")
        return None

    return report.leaks


# ----- Confidence filter -----
def is_high_confidence(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return " ".join(value.lower().split()) in KEPT_CONFIDENCE


def filter_high_confidence(raw_leaks: Sequence[Any]) -> List[Detection]:
    """Keep only high-confidence leaks, in the order Gemini returned them."""
    detections = []
    for leak in raw_leaks:
        if not isinstance(leak, dict) or not is_high_confidence(leak.get("confidence")):
            continue
        try:
            detections.append(Detection.model_validate(leak))
        except ValidationError as e:
            logger.warning(f"Dropping malformed leak {leak!r}: {e.error_count()} error(s)")

    dropped = len(raw_leaks) - len(detections)
    if dropped:
        logger.info(f"Filtered out {dropped} low/medium confidence or invalid detection(s)")

    for i, detection in enumerate(detections, start=1):
        logger.info(f"  {i}. {detection.description or 'no description'}")
        logger.info(f"     Evidence: {detection.evidence or 'N/A'}")

    return detections
