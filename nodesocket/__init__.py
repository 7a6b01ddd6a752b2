"""Asyncio UDP sockets with packet filtering, GCRA rate limiting and ban lists."""

__version__ = "0.1.0"

__all__ = ["cache", "filter", "rate_limiter", "recv", "send", "transport"]