"""Sidekick reward scheduler package.

Having this file ensures the 'sidekick' directory is recognized as a standard
Python package during test discovery and when installed in editable mode.
"""

__all__: list[str] = []
