"""
Parley - streaming generation and tool orchestration for multi-participant chat.
"""

__version__ = "0.1.0"
