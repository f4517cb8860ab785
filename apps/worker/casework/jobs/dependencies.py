"""Collaborators shared by every job handler in a worker process."""

from __future__ import annotations

from dataclasses import dataclass

from casework.core.config import Settings
from casework.jobs.client import JobSender
from casework.services.legacy_api import LegacyApiClient
from casework.services.llm_analysis_service import LLMAnalysisService
from casework.services.triage_cache import TriageCache


@dataclass
class WorkerDependencies:
    """
    Built once by the worker and passed to handlers alongside the session.

    ``llm_service`` is None when no LLM API key is configured; triage then
    uses the rule-based suggester.
    """

    settings: Settings
    legacy_api: LegacyApiClient
    jobs: JobSender
    cache: TriageCache
    llm_service: LLMAnalysisService | None = None
