"""OpenAI-compatible bridge to the claude.ai web conversation API."""

__version__ = "0.1.0"
