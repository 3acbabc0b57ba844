"""
ReplGuard — replicated directory fleet monitoring and self-healing.
"""

__version__ = "0.1.0"
