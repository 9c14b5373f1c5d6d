"""Capability registry answering natural-language tool queries."""

from agent_engine.indexer.core import ToolIndex

__all__ = ["ToolIndex"]
