"""
Gemini-backed tutoring pipelines: step extraction, hints and guiding questions.

Every pipeline is one ``generate_content`` call. Structured outputs ask for
``application/json`` with a response schema; whatever comes back is still
checked with the pydantic models in schemas.py before it reaches a caller.
"""
from __future__ import annotations

import json
import logging
import mimetypes
from urllib.parse import urlparse

from google import genai
from google.genai import types
from pydantic import ValidationError

from config import DEFAULT_GEMINI_MODEL
from errors import BadRequest, UpstreamError
from schemas import (
    ExplainConditionHint,
    ExtractedProblemTexts,
    ExtractedSolution,
    GuidingQuestion,
    GuidingQuestionsRequest,
    NextHint,
    Step,
    WhyHint,
)

logger = logging.getLogger(__name__)


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "problemText": {"type": "string"},
        "conditions": {"type": "array", "items": {"type": "string"}},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        },
    },
    "required": ["problemText", "conditions", "steps"],
}

PROBLEM_TEXTS_SCHEMA = {
    "type": "object",
    "properties": {
        "problemText": {"type": "string", "description": "Problem statement in Chinese"},
        "problemTextEn": {"type": "string", "description": "Problem statement in English"},
    },
    "required": ["problemText", "problemTextEn"],
}

GUIDING_QUESTIONS_SCHEMA = {
    "type": "object",
    "properties": {
        "questions": {
            "type": "array",
            "minItems": 3,
            "maxItems": 5,
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string"},
                    "options": {
                        "type": "array",
                        "items": {"type": "string"},
                        "minItems": 3,
                        "maxItems": 4,
                    },
                    "correctIndex": {"type": "integer", "minimum": 0, "maximum": 3},
                    "explanation": {"type": "string"},
                },
                "required": ["question", "options", "correctIndex", "explanation"],
            },
        },
    },
    "required": ["questions"],
}


# ============================================================================
# PROMPTS
# ============================================================================

EXTRACTION_SYSTEM = (
    "You are an expert at extracting worked solutions from images of math problems. "
    "Read the problem image and the solution image carefully and return:\n"
    "- problemText: the complete problem statement, with math written in LaTeX wrapped in $...$.\n"
    "- conditions: every known condition given by the problem, one short string each (e.g. \"AB = AE\").\n"
    "- steps: the solution split into steps in order. Each step is one self-contained piece of "
    "reasoning or calculation, with math wrapped in $...$."
)

PROBLEM_TEXTS_SYSTEM = (
    "You analyse images of math problems. From the problem image extract "
    "1) the full problem statement in Chinese and 2) the full problem statement in English. "
    "Write all math in LaTeX wrapped in $...$."
)

WHY_SYSTEM = """You are a math tutor. The student is reading a worked solution and wants to know why the current step follows.

Rules:
1. Only explain the key reason, formula or transformation that leads from the previous one or two steps to the current step.
2. Keep it to 1-4 sentences.
3. Do not walk through the whole problem.
4. Be concise and answer in the language the steps are written in.
5. If the student highlighted some text, focus on the highlighted part.
6. Wrap formulas in $...$."""

NEXT_SYSTEM = """You are a math tutor. The student is reading a worked solution and wants a nudge toward the next step.

Rules:
1. Only point the direction for the next step (which theorem to use, which quantity to construct, what to substitute).
2. Never state the final answer or the full solution.
3. Keep it to 1-4 sentences.
4. Be concise and answer in the language the steps are written in.
5. If the student highlighted some text, build the hint around the highlighted part.
6. Wrap formulas in $...$."""

CONDITION_SYSTEM = """You are a math tutor. The student clicked one of the known conditions of a problem and wants to know what it is for.

Rules:
1. Explain the role this condition plays in the solution: which steps rely on it and what it lets us conclude.
2. Keep it to 2-5 sentences.
3. Do not restate the whole solution.
4. Be concise and answer in the language the steps are written in.
5. Wrap formulas in $...$."""

GUIDING_QUESTIONS_SYSTEM = """You are a patient math tutor who teaches with the Socratic method.
Given a problem and its worked solution, write 3-5 multiple-choice questions that lead the student to rediscover the solution on their own.

Rules:
- Follow the order of the solution: each question prepares the next step.
- Each question has 3 or 4 options. Wrong options must be plausible and reflect common misconceptions.
- correctIndex is the 0-based index of the right option.
- explanation says in 1-2 sentences why the right option is right.
- Do not hand over the whole solution in any single question.
- Write math in LaTeX wrapped in $...$ and answer in the language of the problem."""


def _image_part(url: str) -> types.Part:
    mime, _ = mimetypes.guess_type(urlparse(url).path)
    if not mime or not mime.startswith("image/"):
        mime = "image/png"
    return types.Part.from_uri(file_uri=url, mime_type=mime)


def _numbered(steps: list[Step]) -> str:
    return "\n".join(f"{i}. {s.text}" for i, s in enumerate(steps, start=1))


def _bulleted(items) -> str:
    return "\n".join(f"- {c}" for c in items)


def find_step(steps: list[Step], step_id: str | None) -> int:
    for idx, step in enumerate(steps):
        if step.id == step_id:
            return idx
    raise BadRequest("Selected step not found")


def build_why_prompt(req: WhyHint) -> tuple[str, str]:
    idx = find_step(req.steps, req.selectedStepId)
    previous = req.steps[max(0, idx - 2):idx]
    prev_text = "\n".join(s.text for s in previous) if previous else "(none, this is the first step)"
    user = f"Previous steps:\n{prev_text}\n\nCurrent step: {req.steps[idx].text}"
    if req.selectedText:
        user += f'\n\nText the student highlighted: "{req.selectedText}"'
    user += "\n\nExplain briefly why we arrive at this step (1-4 sentences):"
    return WHY_SYSTEM, user


def build_next_prompt(req: NextHint) -> tuple[str, str]:
    idx = find_step(req.steps, req.selectedStepId)
    user = f"Current step: {req.steps[idx].text}"
    if idx + 1 < len(req.steps):
        user += f'\n\n(For reference only, do not reveal it: the next step is "{req.steps[idx + 1].text}")'
    if req.selectedText:
        user += f'\n\nText the student highlighted: "{req.selectedText}"'
    user += "\n\nGive a hint about what to think about next (1-4 sentences, no answer):"
    return NEXT_SYSTEM, user


def build_condition_prompt(req: ExplainConditionHint) -> tuple[str, str]:
    condition = (req.selectedCondition or "").strip()
    if not condition:
        raise BadRequest("No condition selected")
    parts = []
    if req.conditions:
        parts.append("Known conditions:\n" + _bulleted(req.conditions))
    parts.append("Solution steps:\n" + _numbered(req.steps))
    parts.append(f'Selected condition: "{condition}"')
    parts.append("Explain the role of this condition in the solution (2-5 sentences):")
    return CONDITION_SYSTEM, "\n\n".join(parts)


HINT_PROMPTS = {
    WhyHint: build_why_prompt,
    NextHint: build_next_prompt,
    ExplainConditionHint: build_condition_prompt,
}


def build_guiding_prompt(req: GuidingQuestionsRequest) -> str:
    parts = []
    if req.problemText:
        parts.append(f"Problem:\n{req.problemText}")
    if req.conditions:
        parts.append("Known conditions:\n" + _bulleted(req.conditions))
    parts.append("Solution steps:\n" + _numbered(req.steps))
    parts.append("Write the guiding questions as JSON.")
    return "\n\n".join(parts)


# ============================================================================
# CLIENT
# ============================================================================

class Tutor:
    def __init__(self, api_key: str | None = None, model: str = DEFAULT_GEMINI_MODEL, client=None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(self, system: str, parts: list[types.Part], schema: dict | None = None) -> str:
        config = {"system_instruction": system}
        if schema is not None:
            config["response_mime_type"] = "application/json"
            config["response_schema"] = schema
        resp = self.client.models.generate_content(
            model=self.model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        if not getattr(resp, "candidates", None):
            raise UpstreamError("Model returned no choices")
        text = (getattr(resp, "text", None) or "").strip()
        if not text:
            raise UpstreamError("Model returned no content")
        return text

    def generate_json(self, system: str, parts: list[types.Part], schema: dict) -> dict:
        raw = self.generate(system, parts, schema)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Model returned malformed JSON: %s", raw[:200])
            raise UpstreamError("Model returned malformed JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError("Model returned JSON that is not an object")
        return data

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_steps(self, problem_image_url: str | None = None, solution_image_url: str | None = None) -> dict:
        parts = [types.Part.from_text(text="Extract the problem text, known conditions and solution steps from the following images.")]
        for url in (problem_image_url, solution_image_url):
            if url:
                parts.append(_image_part(url))

        data = self.generate_json(EXTRACTION_SYSTEM, parts, EXTRACTION_SCHEMA)
        try:
            parsed = ExtractedSolution.model_validate(data)
        except ValidationError as e:
            raise UpstreamError(f"Model returned an invalid extraction: {e.error_count()} error(s)") from e

        return {
            "problemText": parsed.problemText,
            "conditions": parsed.conditions,
            "steps": [{"id": f"step-{i}", "text": s.text} for i, s in enumerate(parsed.steps, start=1)],
        }

    def extract_problem_texts(self, problem_image_url: str) -> dict:
        parts = [
            types.Part.from_text(text="Extract the Chinese and English problem text from this image."),
            _image_part(problem_image_url),
        ]
        data = self.generate_json(PROBLEM_TEXTS_SYSTEM, parts, PROBLEM_TEXTS_SCHEMA)
        try:
            parsed = ExtractedProblemTexts.model_validate(data)
        except ValidationError as e:
            raise UpstreamError("Model returned invalid problem texts") from e
        return {"problemText": parsed.problemText, "problemTextEn": parsed.problemTextEn}

    # ------------------------------------------------------------------
    # Hints
    # ------------------------------------------------------------------

    def hint(self, req) -> str:
        """Return a short hint for one of WhyHint / NextHint / ExplainConditionHint."""
        system, user = HINT_PROMPTS[type(req)](req)
        return self.generate(system, [types.Part.from_text(text=user)])

    # ------------------------------------------------------------------
    # Guiding questions
    # ------------------------------------------------------------------

    def guiding_questions(self, req: GuidingQuestionsRequest) -> list[dict]:
        parts = [types.Part.from_text(text=build_guiding_prompt(req))]
        for url in (req.problemImageUrl, req.solutionImageUrl):
            if url:
                parts.append(_image_part(url))

        data = self.generate_json(GUIDING_QUESTIONS_SYSTEM, parts, GUIDING_QUESTIONS_SCHEMA)
        items = data.get("questions")
        if not isinstance(items, list):
            raise UpstreamError("Model response is missing the questions array")

        questions: list[dict] = []
        for i, item in enumerate(items):
            try:
                questions.append(GuidingQuestion.model_validate(item).model_dump())
            except ValidationError as e:
                logger.warning("Dropping guiding question %d: %s", i, e.errors()[0].get("msg"))
        if not questions:
            raise UpstreamError("Model returned no valid guiding questions")
        return questions
