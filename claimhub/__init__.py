"""
ClaimHub - dual-path claims processing pipeline.
"""

__version__ = "1.0.0"
