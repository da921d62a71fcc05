"""Asyncio RPC framework with deadlines, cancellation and generated client stubs."""

__version__ = "0.1.0"

__all__ = ["channel", "context", "definition", "dispatch", "in_flight", "messages", "service"]