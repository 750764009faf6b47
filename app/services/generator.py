"""Generator interface: turns one item payload into artifact dicts."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.models.run import JobKind
from app.schemas.run import RunConfig
from app.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

GENERATION_MODE_CONFIG = {
    "compact": {
        "stories": (5, 8),
        "subtasks": (3, 5),
        "focus": "Core user journeys only, happy paths",
    },
    "standard": {
        "stories": (8, 12),
        "subtasks": (5, 8),
        "focus": "Complete feature coverage with primary edge cases",
    },
    "detailed": {
        "stories": (12, 15),
        "subtasks": (8, 12),
        "focus": "Exhaustive coverage including edge cases, error states, and alternative flows",
    },
}

PERSONA_SETS = {
    "lightweight": ["End User", "Administrator", "System"],
    "core": ["End User", "Administrator", "System", "Product Owner", "Developer"],
    "full": [
        "End User",
        "Administrator",
        "System",
        "Product Owner",
        "Developer",
        "QA Engineer",
        "Security Analyst",
        "Support Agent",
        "Operations",
    ],
}


@dataclass
class GenerationResult:
    success: bool
    data: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    tokens_used: int = 0


class Generator:
    """Opaque generation call used by the item processor."""

    def generate(self, job_kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        raise NotImplementedError


def build_messages(job_kind: str, payload: Dict[str, Any], config: RunConfig) -> List[Dict[str, str]]:
    """Build chat messages asking for a JSON object with an ``items`` list."""
    mode = GENERATION_MODE_CONFIG[config.mode]
    personas = ", ".join(PERSONA_SETS[config.persona_set])
    source = json.dumps(payload, ensure_ascii=False, default=str)

    if job_kind == JobKind.ANALYZE_DOCUMENTS:
        system = (
            "You are a requirements analyst. Extract requirement cards from the document.\n"
            'Return {"items": [{"title", "problem", "target_users", "desired_outcomes", "priority"}]}.'
        )
    elif job_kind == JobKind.GENERATE_STORIES:
        low, high = mode["stories"]
        system = (
            "You are a product analyst. Write user stories for the epic.\n"
            f"Generate {low}-{high} stories. Focus: {mode['focus']}.\n"
            f"Use only these personas: {personas}.\n"
            'Return {"items": [{"title", "user_story", "persona", "acceptance_criteria", '
            '"technical_notes", "priority", "effort"}]}.'
        )
    elif job_kind == JobKind.GENERATE_SUBTASKS:
        low, high = mode["subtasks"]
        system = (
            "You are a technical product analyst. Break the user story into implementation subtasks.\n"
            f"Generate {low}-{high} subtasks.\n"
            'Return {"items": [{"title", "description", "estimate"}]}.'
        )
    else:
        raise ValueError(f"Unknown job kind: {job_kind}")

    system += f"\nNever return more than {config.max_artifacts_per_item} items."
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": f"SOURCE DATA (untrusted):\n{source}"},
    ]


def parse_items(content: str) -> List[Dict[str, Any]]:
    """Parse the ``items`` list out of a model response."""
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    data = json.loads(text)
    items = data.get("items") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("Response has no items list")
    return [item for item in items if isinstance(item, dict) and item.get("title")]


class LLMGenerator(Generator):
    """Generator backed by OpenRouter chat completions."""

    def __init__(self, llm_client: Optional[LLMClient] = None, model: Optional[str] = None):
        self.llm_client = llm_client or LLMClient()
        self.model = model or settings.GENERATION_MODEL

    def generate(self, job_kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        messages = build_messages(job_kind, payload, config)
        try:
            completion = self.llm_client.chat_completion(
                model=self.model,
                messages=messages,
                temperature=0.4,
                json_mode=True,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Generator request failed: {e}")
            return GenerationResult(success=False, error=f"Generator request failed: {e}")

        try:
            items = parse_items(completion.content)
        except (json.JSONDecodeError, ValueError) as e:
            return GenerationResult(
                success=False,
                error=f"Invalid generator response: {e}",
                tokens_used=completion.tokens_used,
            )

        if not items:
            return GenerationResult(
                success=False,
                error="Generator returned no items",
                tokens_used=completion.tokens_used,
            )

        return GenerationResult(
            success=True,
            data=items[: config.max_artifacts_per_item],
            tokens_used=completion.tokens_used,
        )


class MockGenerator(Generator):
    """Deterministic generator used when no API key is configured."""

    SUBTASK_TEMPLATES = [
        ("Design", "UI/UX", "S"),
        ("Implement", "frontend component", "M"),
        ("Create", "API endpoint", "M"),
        ("Write", "database queries", "S"),
        ("Add", "validation logic", "S"),
        ("Implement", "error handling", "S"),
        ("Write", "unit tests", "M"),
        ("Write", "integration tests", "M"),
        ("Update", "documentation", "XS"),
        ("Perform", "code review", "S"),
        ("Configure", "feature flags", "XS"),
        ("Set up", "monitoring", "S"),
    ]

    def generate(self, job_kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        title = payload.get("title") or payload.get("filename") or "Item"
        mode = GENERATION_MODE_CONFIG[config.mode]
        personas = PERSONA_SETS[config.persona_set]

        if job_kind == JobKind.ANALYZE_DOCUMENTS:
            items = [
                {
                    "title": f"{title}: requirement {i + 1}",
                    "problem": "Extracted from uploaded document",
                    "target_users": personas[0],
                    "desired_outcomes": "Documented outcome",
                    "priority": "Medium",
                }
                for i in range(2)
            ]
        elif job_kind == JobKind.GENERATE_STORIES:
            items = [
                {
                    "title": f"{title} story {i + 1}",
                    "user_story": f"As a {personas[i % len(personas)]}, I want {title.lower()} so that work gets done",
                    "persona": personas[i % len(personas)],
                    "acceptance_criteria": ["Given a valid request, the result is saved"],
                    "priority": "Medium",
                    "effort": "M",
                }
                for i in range(mode["stories"][0])
            ]
        elif job_kind == JobKind.GENERATE_SUBTASKS:
            items = [
                {
                    "title": f"{action} {kind} for {title}",
                    "description": f"{action} the {kind}",
                    "estimate": effort,
                }
                for action, kind, effort in self.SUBTASK_TEMPLATES[: mode["subtasks"][0]]
            ]
        else:
            return GenerationResult(success=False, error=f"Unknown job kind: {job_kind}")

        return GenerationResult(success=True, data=items[: config.max_artifacts_per_item])


def get_generator() -> Generator:
    """Pick the configured generator."""
    if settings.OPENROUTER_API_KEY:
        return LLMGenerator()
    logger.info("OPENROUTER_API_KEY not set, using mock generator")
    return MockGenerator()
