"""
PharmChecker billing engine — recurring subscription billing lifecycle.
"""

__version__ = "0.1.0"
