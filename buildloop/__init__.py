# buildloop/__init__.py
"""buildloop: queued, LLM-driven build and deploy orchestration."""

__version__ = "0.1.0"
