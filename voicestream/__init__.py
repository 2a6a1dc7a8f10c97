"""
voicestream - live text and speech streaming for chat responses.
"""

__version__ = "1.0.0"
