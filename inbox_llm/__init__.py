"""LLM enrichment chain with pluggable backends, tool calls, retries and fallback."""

__version__ = "0.1.0"