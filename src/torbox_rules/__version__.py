"""Version information for torbox-rules"""

__version__ = '1.0.0'
__description__ = 'Scheduled automation rules for TorBox downloads'
