"""
torbox-rules - scheduled automation rules for TorBox downloads

Tenants define rules (trigger + conditions + action) that a scheduler runs
periodically against their torrents, usenet jobs and web downloads.
"""

from torbox_rules.__version__ import __version__, __description__

__all__ = ['__version__', '__description__']
