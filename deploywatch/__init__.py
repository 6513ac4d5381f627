"""Deploywatch - branch-driven deployment automation.

Polls git branches and runs their deployment steps whenever a new commit lands.
"""

__version__ = "0.1.0"
