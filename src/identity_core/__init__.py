"""
Identity core.

Credential and OAuth login, rotating refresh-token sessions with reuse
detection, account linking and abuse mitigation.
"""

__version__ = "0.1.0"
