"""
toolbelt: dependency-aware, parallel installation of developer tools.
"""

__version__ = "1.0.0"
