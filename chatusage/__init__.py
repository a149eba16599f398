"""
chatusage - Chat Turn Usage Accounting

Per-turn instrumentation for LLM chat requests: token estimation,
context reduction (cleaning, limiting, summarization), usage logging
and durable storage with time-windowed analytics.
"""

__version__ = "1.0.0"
__author__ = "chatusage"
