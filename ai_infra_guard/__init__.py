"""
AI Infra Guard.

Admission control, provider fallback and cost tracking for LLM calls.
"""

__version__ = "0.1.0"
