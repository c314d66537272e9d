import pytest
import requests
from pydantic import ValidationError

from flowguardian.exceptions import SchemaError, ServiceError
from flowguardian.gemini import (
    PRESSURE_HINTS,
    build_leak_prompt,
    build_pressure_context,
    call_gemini,
    compose_request,
    filter_high_confidence,
    interpret_response,
    is_high_confidence,
    parse_leak_report,
    pressure_tier,
    strip_code_fences,
)
from flowguardian.schemas import ConfidenceTier, PressureTier
from flowguardian.utils import PNG_SIGNATURE


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self.payload


def gemini_payload(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


# ----- Pressure context -----
def test_pressure_tiers():
    assert pressure_tier(abs(20.0 - 16.5)) == PressureTier.SIGNIFICANT
    assert pressure_tier(abs(12.0 - 12.8)) == PressureTier.NORMAL
    assert pressure_tier(2.0) == PressureTier.MODERATE
    assert pressure_tier(3.0) == PressureTier.MODERATE
    assert pressure_tier(1.5) == PressureTier.NORMAL


def test_pressure_context_significant_drop():
    context = build_pressure_context(20.0, 16.5)
    assert "Pressure Difference: 3.50 PSI" in context
    assert PRESSURE_HINTS[PressureTier.SIGNIFICANT] in context


def test_pressure_context_normal():
    context = build_pressure_context(12.0, 12.8)
    assert "Pressure Difference: 0.80 PSI" in context
    assert PRESSURE_HINTS[PressureTier.NORMAL] in context


def test_pressure_context_requires_both_readings():
    assert build_pressure_context(None, 12.0) == ""
    assert build_pressure_context(12.0, None) == ""
    assert build_pressure_context(None, None) == ""


# ----- Request composition -----
def test_prompt_embeds_pressure_context_verbatim():
    context = build_pressure_context(10.0, 8.0)
    prompt = build_leak_prompt(context)
    assert context in prompt
    assert PRESSURE_HINTS[PressureTier.MODERATE] in prompt
    assert '{"leaks": []}' in prompt


def test_prompt_without_pressure():
    prompt = build_leak_prompt()
    assert "SYSTEM PRESSURE DATA" not in prompt
    assert "Mold/mildew" in prompt
    assert "glare" in prompt


def test_compose_request_payload():
    image_bytes = PNG_SIGNATURE + b"fake image data"
    request = compose_request(image_bytes, "context")
    payload = request.to_payload()

    parts = payload["contents"][0]["parts"]
    assert parts[0]["text"] == request.prompt
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert parts[1]["inline_data"]["data"] == request.image_base64
    assert payload["generationConfig"] == {"temperature": 0.1, "topK": 20, "topP": 0.8}


def test_compose_request_defaults_to_jpeg():
    request = compose_request(b"\xff\xd8\xff\xe0 jpeg", "")
    assert request.mime_type == "image/jpeg"
    assert request.pressure_context == ""


def test_request_is_immutable():
    request = compose_request(b"\xff\xd8\xff", "")
    with pytest.raises(ValidationError):
        request.prompt = "something else"


# ----- Gemini call -----
def test_call_gemini_returns_text(monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return FakeResponse(gemini_payload('{"leaks": []}'))

    monkeypatch.setattr(requests, "post", fake_post)
    request = compose_request(b"\xff\xd8\xff", "")

    text = call_gemini(request, api_key="secret", api_url="https://gemini.test/generate", timeout=5)

    assert text == '{"leaks": []}'
    url, kwargs = calls[0]
    assert url == "https://gemini.test/generate"
    assert kwargs["params"] == {"key": "secret"}
    assert kwargs["timeout"] == 5
    assert kwargs["json"] == request.to_payload()


def test_call_gemini_without_candidates(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda url, **kwargs: FakeResponse({"candidates": []}))
    request = compose_request(b"\xff\xd8\xff", "")
    assert call_gemini(request, api_key="k", api_url="https://gemini.test") is None


def test_call_gemini_http_error(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda url, **kwargs: FakeResponse({}, status_code=503))
    request = compose_request(b"\xff\xd8\xff", "")
    with pytest.raises(ServiceError):
        call_gemini(request, api_key="k", api_url="https://gemini.test")


def test_call_gemini_retries_then_gives_up(monkeypatch):
    attempts = []

    def fake_post(url, **kwargs):
        attempts.append(url)
        raise requests.Timeout("timed out")

    monkeypatch.setattr(requests, "post", fake_post)
    request = compose_request(b"\xff\xd8\xff", "")
    with pytest.raises(ServiceError):
        call_gemini(request, api_key="k", api_url="https://gemini.test", max_retries=2, retry_delay=0)
    assert len(attempts) == 3


def test_call_gemini_recovers_on_retry(monkeypatch):
    responses = [requests.ConnectionError("reset"), FakeResponse(gemini_payload("ok"))]

    def fake_post(url, **kwargs):
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, "post", fake_post)
    request = compose_request(b"\xff\xd8\xff", "")
    assert call_gemini(request, api_key="k", api_url="https://gemini.test", max_retries=1, retry_delay=0) == "ok"


# ----- Response interpretation -----
def test_strip_code_fences():
    assert strip_code_fences('```json\n{"leaks": []}\n```') == '{"leaks": []}'
    assert strip_code_fences('```\n{"leaks": []}\n```\n') == '{"leaks": []}'
    assert strip_code_fences('  {"leaks": []}  ') == '{"leaks": []}'


def test_interpret_fenced_response():
    leaks = interpret_response('```json\n{"leaks": [{"x": 1, "confidence": "high"}]}\n```')
    assert leaks == [{"x": 1, "confidence": "high"}]


def test_interpret_missing_leaks_key():
    assert interpret_response('{"summary": "nothing"}') == []


@pytest.mark.parametrize("text", [
    None,
    "",
    '{"leaks": [{"x": 10, "y": ',
    "I could not find any leaks.",
    '[{"x": 10}]',
    '{"leaks": "none"}',
])
def test_interpret_unusable_response(text):
    assert interpret_response(text) is None


def test_parse_leak_report_raises_schema_error():
    with pytest.raises(SchemaError):
        parse_leak_report("not json")


# ----- Confidence filter -----
def test_is_high_confidence():
    assert is_high_confidence("high")
    assert is_high_confidence("Very  High")
    assert not is_high_confidence("medium")
    assert not is_high_confidence(None)
    assert not is_high_confidence(0.95)


def test_filter_drops_medium_confidence():
    raw = [{"x": 10, "y": 10, "width": 50, "height": 40, "confidence": "medium"}]
    assert filter_high_confidence(raw) == []


def test_filter_keeps_high_in_order():
    raw = [
        {"x": 5, "y": 5, "width": 10, "height": 10, "confidence": "high", "description": "first"},
        {"x": 6, "y": 6, "width": 10, "height": 10, "confidence": "low", "description": "skip"},
        {"x": 7, "y": 7, "width": 10, "height": 10, "confidence": "very high", "description": "second"},
        {"x": 8, "y": 8, "width": 10, "height": 10, "confidence": "HIGH", "description": "third"},
    ]
    detections = filter_high_confidence(raw)

    assert [d.description for d in detections] == ["first", "second", "third"]
    assert detections[1].confidence == ConfidenceTier.VERY_HIGH
    assert detections[2].confidence == ConfidenceTier.HIGH


def test_filter_drops_malformed_entries():
    raw = [
        "not a leak",
        {"x": 1, "y": 1, "width": 0, "height": 10, "confidence": "high"},
        {"x": 1, "y": 1, "width": -5, "height": 10, "confidence": "high"},
        {"y": 1, "width": 5, "height": 10, "confidence": "high"},
        {"x": 12.6, "y": 3.2, "width": 20.0, "height": 10, "confidence": "high", "evidence": None},
    ]
    detections = filter_high_confidence(raw)

    assert len(detections) == 1
    assert (detections[0].x, detections[0].y, detections[0].width) == (13, 3, 20)
    assert detections[0].evidence == ""


@pytest.mark.parametrize("overrides", [
    {"x": float("inf")},
    {"y": float("-inf")},
    {"width": float("nan")},
    {"x": 10 ** 20},
    {"height": 10 ** 6},
    {"x": "left"},
])
def test_filter_drops_out_of_range_coordinates(overrides):
    leak = {"x": 10, "y": 10, "width": 50, "height": 40, "confidence": "high"}
    leak.update(overrides)
    assert filter_high_confidence([leak]) == []
