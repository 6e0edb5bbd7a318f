"""
SDK for Model Gate.

Provides gated access to model backends.
"""

from .openai_client import GateBlocked, GatedOpenAI

__all__ = ["GateBlocked", "GatedOpenAI"]
