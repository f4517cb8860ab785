"""Pydantic schemas for job payloads, results and triage data."""
