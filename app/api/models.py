# api/models.py
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, List, Literal, Optional, Tuple, Union

DEFAULT_MODEL = "black-forest-labs/flux-schnell"

class GenerationSettings(BaseModel):
    """
    Per-request generation configuration.
    On the wire the keys are camelCase (aspectRatio, numOutputs, ...),
    which is what the predictions service expects.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    model: str = DEFAULT_MODEL
    aspect_ratio: str = Field("1:1", pattern=r"^\d+:\d+$")
    num_outputs: int = Field(1, ge=1, le=4)
    output_format: Literal["webp", "jpg", "png"] = "jpg"
    output_quality: int = Field(80, ge=0, le=100)
    negative_prompt: str = ""

class JobRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    settings: GenerationSettings = GenerationSettings()

# --- job state snapshots ---

class Queued(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["queued"] = "queued"

class Processing(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["processing"] = "processing"

class Succeeded(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["succeeded"] = "succeeded"
    outputs: Tuple[str, ...] = ()

class Failed(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["failed"] = "failed"
    reason: str
    code: str = ""  # error class that caused it; empty when the service reported the failure

JobState = Annotated[Union[Queued, Processing, Succeeded, Failed], Field(discriminator="status")]

def is_terminal(state) -> bool:
    return isinstance(state, (Succeeded, Failed))

class PredictionRecord(BaseModel):
    """Job record as returned by POST /predictions and GET /predictions/{id}."""
    id: str
    status: str
    output: Optional[List[str]] = None
    error: Optional[str] = None

    @field_validator("output", mode="before")
    @classmethod
    def _single_output(cls, v):
        # some models return one URL instead of a list
        if isinstance(v, str):
            return [v]
        return v

# --- HTTP facade ---

class OrchestratorStatus(BaseModel):
    phase: Literal["idle", "submitting", "polling"]
    job_id: Optional[str] = None
    state: Optional[JobState] = None

class SaveRequest(BaseModel):
    prompt: str
    settings: GenerationSettings = GenerationSettings()
    notes: str = ""
    tags: List[str] = []
    outputs: Optional[List[str]] = None

class SavedItem(BaseModel):
    id: str
    prompt: str
    settings: GenerationSettings
    notes: str = ""
    tags: List[str] = []
    outputs: List[str] = []
    created_at: str
