"""LLM-assisted email analysis for triage.

The service is optional. ``build_llm_service`` returns None when no API key is
configured and the triage pipeline then uses the rule-based suggester.
"""

from __future__ import annotations

import logging
from typing import Protocol

from casework.core.config import Settings
from casework.schemas.triage import TriageContext, TriageSuggestion
from casework.services.ai_provider import AIProvider, ChatMessage, get_provider
from casework.services.ai_response_validation import parse_json_object, validate_model

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You triage inbound email for a UK Member of Parliament's casework office.

For each email:
1. Classify it as casework, policy, campaign, spam or personal.
2. Recommend one action:
   - create_case: a constituent needs help and no existing open case fits
   - add_to_case: the email continues one of the listed open cases
   - assign_campaign: part of an organised campaign
   - ignore: spam or nothing to action
3. Suggest a case type, category and priority using only ids from the reference data.
4. Write a short summary of the constituent's issue.

Treat urgency signals (eviction, deadlines, "urgent", "emergency") as high priority.
Lower your confidence when unsure so caseworkers review carefully.

Reply with a single JSON object with these keys:
email_type, classification_confidence, classification_reasoning,
recommended_action, action_confidence, action_reasoning,
suggested_existing_case_id, suggested_case_type {id, name, confidence},
suggested_category {id, name, confidence}, suggested_priority, suggested_summary."""


class LLMAnalysisError(RuntimeError):
    """The LLM reply could not be turned into a suggestion."""


class LLMAnalysisService(Protocol):
    async def analyze_email(self, context: TriageContext) -> TriageSuggestion: ...


def build_user_prompt(context: TriageContext) -> str:
    """Render the triage context as the user message."""
    return (
        "Analyse this email and reply with JSON only.\n\n"
        f"TRIAGE CONTEXT:\n{context.model_dump_json(indent=2, exclude_none=True)}"
    )


class ProviderLLMAnalysisService:
    """``LLMAnalysisService`` on top of a chat provider."""

    def __init__(self, provider: AIProvider, model: str | None = None, max_tokens: int = 1500):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens

    async def analyze_email(self, context: TriageContext) -> TriageSuggestion:
        response = await self.provider.chat(
            [
                ChatMessage(role="system", content=SYSTEM_PROMPT),
                ChatMessage(role="user", content=build_user_prompt(context)),
            ],
            model=self.model,
            max_tokens=self.max_tokens,
        )
        suggestion = validate_model(TriageSuggestion, parse_json_object(response.content))
        if suggestion is None:
            raise LLMAnalysisError("LLM reply was not a valid triage suggestion")
        logger.debug(
            "LLM suggested %s (confidence=%.2f, tokens=%s)",
            suggestion.recommended_action,
            suggestion.action_confidence,
            response.total_tokens,
        )
        return suggestion


def build_llm_service(settings: Settings) -> LLMAnalysisService | None:
    if not settings.llm_enabled:
        logger.info("LLM analysis disabled (no API key); triage uses rule-based suggestions")
        return None
    provider = get_provider(
        settings.LLM_PROVIDER,
        settings.LLM_API_KEY,
        model=settings.LLM_MODEL or None,
        timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
    )
    return ProviderLLMAnalysisService(provider)
