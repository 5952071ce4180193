"""
Services package for the Capital Ladder bot.

Realtime broadcasting, live score sessions and outbound notifications.
"""

from .realtime import RealtimeBroker, InProcessBroker, RedisBroker, create_broker
from .live_score import LiveScoreSession, LiveScoreHub
from .push import ExpoPushClient
from .notifier import LadderNotifier

__all__ = [
    'RealtimeBroker', 'InProcessBroker', 'RedisBroker', 'create_broker',
    'LiveScoreSession', 'LiveScoreHub', 'ExpoPushClient', 'LadderNotifier'
]
