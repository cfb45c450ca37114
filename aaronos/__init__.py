"""
AaronOS job core.

Long-running AI job execution (research, eBook generation, accessibility
scanning) and the cron-based maintenance scheduler behind the AaronOS API.
"""

__version__ = "1.0.0"
