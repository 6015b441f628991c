"""
Core modules for AI infrastructure.

This package contains rate limiting, provider fallback, cost tracking,
feature flags, A/B test assignment and credential storage.
"""
