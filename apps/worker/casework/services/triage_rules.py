"""Deterministic routing suggestions, used when no LLM is configured or it fails."""

from __future__ import annotations

from casework.db.enums import TriageAction, Urgency
from casework.schemas.triage import CaseMatch, ConstituentMatch, RoutingSuggestion
from casework.utils.normalization import significant_words

URGENCY_KEYWORDS = ("urgent", "emergency", "asap", "immediately", "critical")
MIN_SHARED_WORDS = 2


def has_urgency_keyword(*texts: str | None) -> bool:
    for text in texts:
        lowered = (text or "").lower()
        if any(keyword in lowered for keyword in URGENCY_KEYWORDS):
            return True
    return False


def apply_urgency(suggestion: RoutingSuggestion, subject: str | None, body: str | None) -> RoutingSuggestion:
    """Force high urgency when the email uses an urgency keyword."""
    if has_urgency_keyword(subject, body):
        return suggestion.model_copy(update={"urgency": Urgency.HIGH})
    return suggestion


def find_related_case(subject: str | None, cases: list[CaseMatch]) -> CaseMatch | None:
    """First case (in the given order) whose summary shares enough words with the subject."""
    subject_words = significant_words(subject)
    if len(subject_words) < MIN_SHARED_WORDS:
        return None
    for case in cases:
        if len(subject_words & significant_words(case.summary)) >= MIN_SHARED_WORDS:
            return case
    return None


def suggest(
    constituent: ConstituentMatch | None,
    cases: list[CaseMatch],
    subject: str | None,
    body: str | None = None,
) -> RoutingSuggestion:
    if constituent is None:
        suggestion = RoutingSuggestion(
            action=TriageAction.CREATE_NEW,
            confidence=0.8,
            reasoning="No matching constituent found. Suggest creating a new constituent and case.",
        )
    elif cases:
        related = find_related_case(subject, cases)
        if related is not None:
            suggestion = RoutingSuggestion(
                action=TriageAction.ADD_TO_CASE,
                confidence=0.9,
                reasoning=f'Subject appears related to existing case: "{related.summary}"',
                case_id=related.id,
            )
        else:
            suggestion = RoutingSuggestion(
                action=TriageAction.ADD_TO_CASE,
                confidence=0.6,
                reasoning=f"Constituent has {len(cases)} open case(s). May be related.",
            )
    else:
        suggestion = RoutingSuggestion(
            action=TriageAction.CREATE_NEW,
            confidence=0.85,
            reasoning="Known constituent with no open cases. Suggest creating a new case.",
        )
    return apply_urgency(suggestion, subject, body)
