"""Pluggable tag generators.

``KeywordTagGenerator`` is the rule-based heuristic and always available.
``OpenAITagGenerator`` asks an OpenAI-compatible chat model for tags.
``FallbackTagGenerator`` composes the two: primary first, fallback on error.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from adotracker import config
from adotracker.errors import TagGenerationError
from adotracker.hierarchy import is_hierarchy_tag
from adotracker.models import TagResult, WorkItem

logger = logging.getLogger("adotracker.tagging")


@runtime_checkable
class TagGenerator(Protocol):
    name: str

    async def generate(self, item: WorkItem, *, confidence_threshold: float) -> TagResult: ...


# ── Keyword heuristic ──────────────────────────────────────────────

TAG_PATTERNS: dict[str, tuple[str, ...]] = {
    # Security & authentication
    "authentication": ("auth", "login", "signin", "sign-in", "password", "credential", "sso", "oauth", "saml"),
    "security": ("security", "secure", "permission", "access control", "authorization", "encrypt", "decrypt"),
    "audit": ("audit", "logging", "log", "tracking", "compliance"),
    # Payment & financial
    "payment": ("payment", "pay", "billing", "invoice", "transaction", "checkout"),
    "finance": ("financial", "accounting", "ledger", "revenue", "cost"),
    # UI & frontend
    "ui": ("ui", "user interface", "frontend", "display", "screen", "page", "view"),
    "mobile": ("mobile", "ios", "android", "app", "responsive"),
    "dashboard": ("dashboard", "analytics", "reporting", "metrics", "chart", "graph"),
    # Backend & API
    "api": ("api", "endpoint", "rest", "graphql", "service", "microservice"),
    "database": ("database", "db", "sql", "query", "schema", "migration", "postgres", "mysql"),
    "integration": ("integration", "integrate", "connector", "webhook", "sync"),
    # Infrastructure
    "devops": ("devops", "ci/cd", "pipeline", "deployment", "release", "build"),
    "infrastructure": ("infrastructure", "server", "cloud", "azure", "aws", "kubernetes", "docker"),
    "performance": ("performance", "optimize", "speed", "cache", "latency"),
    # Testing & quality
    "testing": ("test", "testing", "qa", "quality", "automated test", "unit test", "integration test"),
    "bug": ("bug", "defect", "issue", "error", "fix", "broken"),
    # Documentation & process
    "documentation": ("documentation", "docs", "readme", "guide", "manual"),
    "research": ("research", "spike", "investigation", "analysis", "explore"),
    # Business areas
    "customer": ("customer", "user", "client", "account"),
    "reporting": ("report", "export", "download", "pdf", "excel"),
    "notification": ("notification", "alert", "email", "sms", "push"),
    "workflow": ("workflow", "process", "automation", "trigger"),
    # Data
    "data": ("data", "dataset", "import", "export", "etl", "migration"),
    "analytics": ("analytics", "insights", "metrics", "statistics", "trends"),
}

WORK_ITEM_TYPE_TAGS: dict[str, tuple[str, ...]] = {
    "User Story": ("story", "feature"),
    "Bug": ("bug", "defect"),
    "Task": ("task",),
    "Epic": ("epic",),
    "Feature": ("feature",),
    "Issue": ("issue",),
}

STATE_TAGS: dict[str, tuple[str, ...]] = {
    "New": ("new",),
    "Active": ("active", "in-progress"),
    "Resolved": ("resolved", "completed"),
    "Closed": ("closed", "done"),
}

TAG_CATEGORIES: dict[str, frozenset[str]] = {
    "technical": frozenset({"api", "database", "infrastructure", "devops", "performance"}),
    "security": frozenset({"authentication", "security", "audit"}),
    "business": frozenset({"payment", "finance", "customer", "reporting"}),
    "ui": frozenset({"ui", "mobile", "dashboard"}),
    "quality": frozenset({"testing", "bug"}),
    "process": frozenset({"documentation", "research", "workflow"}),
}

_TYPE_TAG_VOCABULARY = frozenset(tag for tags in WORK_ITEM_TYPE_TAGS.values() for tag in tags)
_STATE_TAG_VOCABULARY = frozenset(tag for tags in STATE_TAGS.values() for tag in tags)

_PATH_SEGMENT_RE = re.compile(r"[^a-z0-9]")
_TAG_RE = re.compile(r"[^a-z0-9]+")


def _path_segment_tag(segment: str) -> Optional[str]:
    normalized = _PATH_SEGMENT_RE.sub("-", segment.lower())
    return normalized if len(normalized) > 2 else None


def categorize_tag(tag: str) -> str:
    for category, tags in TAG_CATEGORIES.items():
        if tag in tags:
            return category
    if tag.startswith("area-"):
        return "area"
    if tag.startswith("iteration-"):
        return "iteration"
    if is_hierarchy_tag(tag):
        return "hierarchy"
    if tag in _TYPE_TAG_VOCABULARY:
        return "type"
    if tag in _STATE_TAG_VOCABULARY:
        return "state"
    return "other"


class KeywordTagGenerator:
    name = "keyword"

    def tag(self, item: WorkItem, *, confidence_threshold: float = 0.5) -> TagResult:
        text = f"{item.title} {item.description}".lower()
        scores: dict[str, float] = {}

        for tag in WORK_ITEM_TYPE_TAGS.get(item.type, ()):
            scores[tag] = 1.0
        for tag in STATE_TAGS.get(item.state, ()):
            scores[tag] = 1.0

        for tag, patterns in TAG_PATTERNS.items():
            matches = sum(1 for pattern in patterns if pattern in text)
            if not matches:
                continue
            confidence = round(min(matches / len(patterns) + 0.5, 1.0), 2)
            if confidence >= confidence_threshold:
                scores[tag] = max(scores.get(tag, 0.0), confidence)

        for segment in (p for p in item.areaPath.split("\\") if p):
            normalized = _path_segment_tag(segment)
            if normalized:
                scores[f"area-{normalized}"] = 0.8

        iteration_parts = [p for p in item.iterationPath.split("\\") if p]
        if iteration_parts:
            normalized = _path_segment_tag(iteration_parts[-1])
            if normalized:
                scores[f"iteration-{normalized}"] = 0.7

        return TagResult(tags=set(scores), confidenceScores=scores)

    async def generate(self, item: WorkItem, *, confidence_threshold: float = 0.5) -> TagResult:
        return self.tag(item, confidence_threshold=confidence_threshold)


# ── LLM-backed generator ───────────────────────────────────────────

_SYSTEM_PROMPT = (
    "You label Azure DevOps work items with short topical tags. "
    "Respond with a JSON object: {\"tags\": [string], \"confidence\": {tag: number between 0 and 1}}. "
    "Tags are lowercase, hyphen-separated, at most 8 per item. "
    "Do not emit hierarchy tags (orphan, has-parent, top-level-*, child-of-*)."
)


class _LLMTagPayload(BaseModel):
    tags: list[str] = Field(default_factory=list)
    confidence: dict[str, float] = Field(default_factory=dict)


def _normalize_tag(raw: str) -> str:
    return _TAG_RE.sub("-", raw.strip().lower()).strip("-")


def _item_prompt(item: WorkItem) -> str:
    description = item.description[:4000]
    return json.dumps(
        {
            "id": item.externalId,
            "type": item.type,
            "state": item.state,
            "title": item.title,
            "description": description,
            "areaPath": item.areaPath,
            "iterationPath": item.iterationPath,
        }
    )


def parse_llm_tags(content: str | None, confidence_threshold: float) -> TagResult:
    """Validate and normalize a JSON tag payload returned by the model."""
    if not content:
        raise TagGenerationError("Model returned an empty response")
    try:
        payload = _LLMTagPayload.model_validate_json(content)
    except ValidationError as exc:
        raise TagGenerationError(f"Model returned malformed tag payload: {exc}") from exc

    scores: dict[str, float] = {}
    normalized_confidence = {_normalize_tag(k): v for k, v in payload.confidence.items()}
    for raw_tag in payload.tags:
        tag = _normalize_tag(raw_tag)
        if not tag or is_hierarchy_tag(tag):
            continue
        score = min(1.0, max(0.0, float(normalized_confidence.get(tag, 1.0))))
        if score >= confidence_threshold:
            scores[tag] = round(score, 2)
    return TagResult(tags=set(scores), confidenceScores=scores)


class OpenAITagGenerator:
    name = "openai"

    def __init__(self, client: Any, model: Optional[str] = None, *, max_tokens: int = 300):
        self.client = client
        self.model = model or config.OPENAI_MODEL
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls) -> "OpenAITagGenerator":
        from openai import AsyncAzureOpenAI, AsyncOpenAI

        if config.AZURE_OPENAI_ENDPOINT:
            client = AsyncAzureOpenAI(
                api_key=config.OPENAI_API_KEY,
                api_version=config.AZURE_OPENAI_API_VERSION,
                azure_endpoint=config.AZURE_OPENAI_ENDPOINT,
            )
            logger.info("Using Azure OpenAI tag generator (deployment=%s)", config.OPENAI_MODEL)
        else:
            client = AsyncOpenAI(
                api_key=config.OPENAI_API_KEY,
                base_url=config.OPENAI_BASE_URL or None,
            )
            logger.info("Using OpenAI tag generator (model=%s)", config.OPENAI_MODEL)
        return cls(client, config.OPENAI_MODEL)

    async def generate(self, item: WorkItem, *, confidence_threshold: float = 0.5) -> TagResult:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": _item_prompt(item)},
                ],
                max_tokens=self.max_tokens,
                temperature=0,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content
        except Exception as exc:
            raise TagGenerationError(f"Tag generation request failed for #{item.externalId}: {exc}") from exc
        return parse_llm_tags(content, confidence_threshold)


class FallbackTagGenerator:
    def __init__(self, primary: TagGenerator, fallback: TagGenerator):
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    async def generate(self, item: WorkItem, *, confidence_threshold: float = 0.5) -> TagResult:
        try:
            return await self.primary.generate(item, confidence_threshold=confidence_threshold)
        except Exception as exc:
            logger.warning(
                "%s tagging failed for #%s, falling back to %s: %s",
                self.primary.name, item.externalId, self.fallback.name, exc,
            )
            return await self.fallback.generate(item, confidence_threshold=confidence_threshold)


def build_tag_generator() -> TagGenerator:
    keyword = KeywordTagGenerator()
    if not config.AI_TAGGING_ENABLED:
        return keyword
    if not config.OPENAI_API_KEY:
        logger.warning("AI tagging enabled but no API key configured; using keyword tagging")
        return keyword
    return FallbackTagGenerator(OpenAITagGenerator.from_config(), keyword)
