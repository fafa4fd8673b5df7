"""Unit Test Assistant: AI-driven pytest generation with a verify-and-repair loop."""

__version__ = "0.1.0"
