"""Saga Game Master: streaming LLM orchestration for a persistent role-playing world."""

__version__ = "0.1.0"
