"""File-backed job orchestration engine for multi-stage LLM pipelines."""

__version__ = "0.1.0"
