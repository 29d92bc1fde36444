"""
Conversational Browser - drive a real browser through natural-language chat.

A language model picks browser actions, a Playwright MCP server performs
them, and a continuously streamed screenshot gives visual feedback.
"""

__version__ = "0.1.0"
__author__ = "Conversational Browser Contributors"
