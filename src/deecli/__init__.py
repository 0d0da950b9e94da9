"""deecli - resilient streaming chat client for DeepSeek-compatible APIs."""

__version__ = "0.3.0"
