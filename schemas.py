"""
Pydantic models for request bodies and for the JSON the model sends back.

Field names are camelCase because they are the wire names used by the web client.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


class Step(BaseModel):
    id: str
    text: str


def _unique_step_ids(steps: List[Step]) -> List[Step]:
    seen = set()
    for step in steps:
        if step.id in seen:
            raise ValueError(f"duplicate step id: {step.id}")
        seen.add(step.id)
    return steps


# ============================================================================
# AUTH / PROBLEMS / PROGRESS
# ============================================================================

class LoginRequest(BaseModel):
    idToken: str = Field(..., min_length=1)


class CreateProblemRequest(BaseModel):
    title: Optional[str] = None
    problemText: Optional[str] = None
    problemTextEn: Optional[str] = None
    problemImageUrl: Optional[str] = None
    problemImageKey: Optional[str] = None
    solutionImageUrl: Optional[str] = None
    solutionImageKey: Optional[str] = None
    steps: List[Step]
    conditions: Optional[List[str]] = None

    @field_validator("steps")
    @classmethod
    def step_ids_unique(cls, v: List[Step]) -> List[Step]:
        return _unique_step_ids(v)


class ProblemIdRequest(BaseModel):
    problemId: int


class StepsRevealedRequest(ProblemIdRequest):
    count: int = Field(..., ge=0)


class ExtractStepsRequest(BaseModel):
    problemImageUrl: Optional[str] = None
    solutionImageUrl: Optional[str] = None


# ============================================================================
# HINTS
# ============================================================================

class _HintBase(BaseModel):
    steps: List[Step]
    conditions: Optional[List[str]] = None


class _StepHint(_HintBase):
    selectedStepId: Optional[str] = None
    selectedText: Optional[str] = None


class WhyHint(_StepHint):
    """Explain how the selected step follows from the ones before it."""

    mode: Literal["why"]


class NextHint(_StepHint):
    """Point toward the step after the selected one without revealing it."""

    mode: Literal["next"]


class ExplainConditionHint(_HintBase):
    """Explain the role a known condition plays across the whole solution."""

    mode: Literal["explainCondition"]
    selectedCondition: Optional[str] = None


HintRequest = Annotated[Union[WhyHint, NextHint, ExplainConditionHint], Field(discriminator="mode")]
hint_request_adapter = TypeAdapter(HintRequest)


# ============================================================================
# GUIDING QUESTIONS
# ============================================================================

class GuidingQuestionsRequest(BaseModel):
    problemImageUrl: Optional[str] = None
    solutionImageUrl: Optional[str] = None
    problemText: Optional[str] = None
    steps: List[Step]
    conditions: Optional[List[str]] = None


class GuidingQuestion(BaseModel):
    question: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=3, max_length=4)
    correctIndex: int
    explanation: str

    @field_validator("options")
    @classmethod
    def options_not_blank(cls, v: List[str]) -> List[str]:
        if any(not str(o).strip() for o in v):
            raise ValueError("options must be non-empty")
        return v

    @model_validator(mode="after")
    def correct_index_in_range(self) -> "GuidingQuestion":
        if not 0 <= self.correctIndex < len(self.options):
            raise ValueError(
                f"correctIndex {self.correctIndex} out of range for {len(self.options)} options"
            )
        return self


# ============================================================================
# MODEL OUTPUT
# ============================================================================

class ExtractedStep(BaseModel):
    text: str


class ExtractedSolution(BaseModel):
    problemText: str = ""
    conditions: List[str] = Field(default_factory=list)
    steps: List[ExtractedStep]


class ExtractedProblemTexts(BaseModel):
    problemText: str
    problemTextEn: str
