"""
chatstream: streaming chat completions against OpenAI-compatible endpoints.
"""

__version__ = "0.1.0"
