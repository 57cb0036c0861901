"""
Taskiq task modules.

- builds: ad-hoc build poll ticks. Builds themselves are claimed by the
  poll scheduler the broker starts.
"""

__all__ = ["builds"]
