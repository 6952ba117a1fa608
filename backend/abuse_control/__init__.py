"""
Abuse control engine for multi-tenant projects
"""

__version__ = "0.1.0"
