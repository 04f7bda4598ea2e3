"""
ttv-analytics
Tracks which followers of a Twitch channel sit in which live chats, and for how long
"""

__version__ = "0.1.0"
