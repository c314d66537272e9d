"""
Leak analysis pipeline.

pressure context -> Gemini request -> response interpretation -> confidence
filter -> annotation. Once a non-empty image is given, every failure falls
back to the original image: the pipeline may fail to annotate but never fails
the caller.
"""
import logging
from typing import Optional

from flowguardian.config import Settings, get_settings
from flowguardian.exceptions import ConfigurationAbsent, InputError, ServiceError
from flowguardian.gemini import (
    build_pressure_context,
    call_gemini,
    compose_request,
    filter_high_confidence,
    interpret_response,
)
from flowguardian.schemas import LeakAnalysisResult
from flowguardian.utils import draw_leak_annotations, encode_image_base64

logger = logging.getLogger(__name__)


def _require_api_key(settings: Settings) -> str:
    if not settings.GEMINI_API_KEY:
        raise ConfigurationAbsent("GEMINI_API_KEY not found")
    return settings.GEMINI_API_KEY


def run_leak_analysis(image_bytes: bytes,
                      end1_pressure: Optional[float] = None,
                      end2_pressure: Optional[float] = None,
                      settings: Optional[Settings] = None) -> LeakAnalysisResult:
    if not image_bytes:
        raise InputError("No image buffer provided!")

    settings = settings or get_settings()
    passthrough = LeakAnalysisResult(edited_image=encode_image_base64(image_bytes))

    try:
        api_key = _require_api_key(settings)
    except ConfigurationAbsent as e:
        logger.warning(f"{e}. Returning original image.")
        return passthrough

    pressure_context = build_pressure_context(end1_pressure, end2_pressure)
    request = compose_request(image_bytes, pressure_context)

    logger.info("Sending image to Gemini for leak analysis...")
    if pressure_context:
        logger.info(f"Pressure context: End1={end1_pressure} PSI, End2={end2_pressure} PSI")

    try:
        text = call_gemini(
            request,
            api_key=api_key,
            api_url=settings.GEMINI_API_URL,
            timeout=settings.GEMINI_TIMEOUT,
            max_retries=settings.GEMINI_MAX_RETRIES,
            retry_delay=settings.GEMINI_RETRY_DELAY,
        )
    except ServiceError as e:
        logger.error(f"Error calling Gemini API: {e}")
        return passthrough

    logger.debug(f"Gemini response: {text}")
    raw_leaks = interpret_response(text)
    if raw_leaks is None:
        return passthrough

    detections = filter_high_confidence(raw_leaks)
    if not detections:
        logger.info("No high-confidence leaks detected - image appears clean.")
        if raw_leaks:
            logger.info(f"Found {len(raw_leaks)} low-confidence area(s), not marking them.")
        return passthrough

    logger.info(f"LEAK ALERT: Found {len(detections)} high-confidence leak(s)!")
    annotated = draw_leak_annotations(image_bytes, detections)
    return LeakAnalysisResult(
        edited_image=encode_image_base64(annotated),
        annotated=annotated is not image_bytes,
        detections=detections,
    )


def analyze_leak(image_bytes: bytes,
                 end1_pressure: Optional[float] = None,
                 end2_pressure: Optional[float] = None,
                 settings: Optional[Settings] = None) -> str:
    """Return the annotated image, or the original one, as base64."""
    return run_leak_analysis(image_bytes, end1_pressure, end2_pressure, settings).edited_image
