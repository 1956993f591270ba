"""
Automation module for the Trailing Stop Engine.
"""
from automation.scheduler import AutomationScheduler

__all__ = ["AutomationScheduler"]
