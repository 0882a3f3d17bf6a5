"""Issue-driven worker orchestration over a pool of LLM endpoints."""

__version__ = "0.1.0"
