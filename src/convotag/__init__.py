"""
Convotag - conversation record store and auto-tagging engine.
"""

__version__ = "0.1.0"
