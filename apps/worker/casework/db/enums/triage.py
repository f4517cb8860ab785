"""Triage pipeline enums."""

from enum import Enum


class TriageAction(str, Enum):
    CREATE_NEW = "create_new"
    ADD_TO_CASE = "add_to_case"
    ASSIGN_CAMPAIGN = "assign_campaign"
    IGNORE = "ignore"


class TriageStatus(str, Enum):
    """Per-email triage state machine."""

    RECEIVED = "received"
    MATCHED = "matched"
    SUGGESTED = "suggested"
    CACHED = "cached"
    DECIDED = "decided"
    IGNORED = "ignored"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MatchType(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
