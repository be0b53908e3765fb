"""
Warden: supervisor for long-lived automated-browser messaging sessions.
"""

__version__ = "0.1.0"
