"""Chapter grouping and LLM-driven chapter analysis for long-form fiction."""

__version__ = "0.1.0"
