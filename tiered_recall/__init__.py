"""
Tiered conversational memory for LLM assistants.

Hot/Warm/Cold turn retention, BM25 retrieval, significance ranking and a
two-pass recognition flow in front of generation.
"""

__version__ = "0.1.0"
