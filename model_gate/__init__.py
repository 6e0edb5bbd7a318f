"""
Model Gate.

Policy-enforcement gate for calls to priced AI-model backends.
"""

__version__ = "0.1.0"
