"""khojbox: OpenAI-compatible front for a Khoj conversation."""

__version__ = "1.0.0"
