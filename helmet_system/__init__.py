"""
Helmet Guard
Near real-time accident detection and escalation for a six-axis motion stream
"""

__version__ = '1.0.0'
