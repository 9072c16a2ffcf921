"""
commhub: multi-provider SMS/voice communication aggregator.
"""

__version__ = "0.1.0"
