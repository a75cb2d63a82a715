"""
svcman - a lightweight service supervisor.

Starts configured services, keeps one daemon instance alive and restarts
git-backed services when their upstream source changes.
"""

__version__ = "0.1.0"
