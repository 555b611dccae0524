"""
aigate - resilience, batching and model routing for LLM inference calls.
"""

__version__ = "0.1.0"
