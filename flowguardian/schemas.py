from enum import Enum
import math
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PressureTier(str, Enum):
    SIGNIFICANT = "significant"
    MODERATE = "moderate"
    NORMAL = "normal"


class ConfidenceTier(str, Enum):
    """Certainty levels Gemini may attach to a leak. Only the top tiers are kept."""
    VERY_HIGH = "very high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PressureReading(BaseModel):
    end1: Optional[float] = None  # PSI
    end2: Optional[float] = None  # PSI

    @property
    def diff(self) -> Optional[float]:
        if self.end1 is None or self.end2 is None:
            return None
        return abs(self.end1 - self.end2)


class GenerationConfig(BaseModel):
    # Low randomness and narrow sampling for conservative answers
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    temperature: float = 0.1
    top_k: int = Field(default=20, alias="topK")
    top_p: float = Field(default=0.8, alias="topP")


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    pressure_context: str = ""
    image_base64: str
    mime_type: str = "image/jpeg"
    generation_config: GenerationConfig = GenerationConfig()

    def to_payload(self) -> dict:
        """Body of a Gemini generateContent call."""
        return {
            "contents": [
                {
                    "parts": [
                        {"text": self.prompt},
                        {
                            "inline_data": {
                                "mime_type": self.mime_type,
                                "data": self.image_base64,
                            }
                        },
                    ]
                }
            ],
            "generationConfig": self.generation_config.model_dump(by_alias=True),
        }


class LeakReport(BaseModel):
    # Entries stay untyped here; they are validated one by one after filtering
    leaks: List[Any] = Field(default_factory=list)


MAX_COORD = 100_000  # pixels; larger values are never a real photo coordinate


class Detection(BaseModel):
    x: int = Field(ge=-MAX_COORD, le=MAX_COORD)
    y: int = Field(ge=-MAX_COORD, le=MAX_COORD)
    width: int = Field(gt=0, le=MAX_COORD)
    height: int = Field(gt=0, le=MAX_COORD)
    confidence: ConfidenceTier
    description: str = ""
    evidence: str = ""

    @field_validator("x", "y", "width", "height", mode="before")
    @classmethod
    def round_coordinates(cls, value):
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError("coordinate must be a finite number")
            return int(round(value))
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, value):
        if isinstance(value, str):
            return " ".join(value.lower().split())
        return value

    @field_validator("description", "evidence", mode="before")
    @classmethod
    def none_to_empty(cls, value):
        return "" if value is None else value


class LeakAnalysisResult(BaseModel):
    edited_image: str  # base64
    annotated: bool = False
    detections: List[Detection] = Field(default_factory=list)


class PressurePayload(BaseModel):
    end1_pressure: float
    end2_pressure: float


class PressureResponse(BaseModel):
    message: str
    pressure_diff: float


class AnalyzeLeakResponse(BaseModel):
    message: str
    edited_image: str
    leak_count: int
    end1_pressure: Optional[float] = None
    end2_pressure: Optional[float] = None
    date_time: str
