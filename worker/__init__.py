"""
Taskiq worker package for Sketch2Agent.

Provides broker configuration and the background build jobs: the pending-build
poll loop started with the worker, and on-demand build tasks.
"""

__all__ = ["broker"]
