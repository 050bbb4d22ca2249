"""Crash-safe orchestrator for LLM-backed multi-step workflows."""

__version__ = "0.1.0"
