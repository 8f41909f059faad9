"""
Data access layer. MeetingManager is the transactional facade the routers
talk to; the engine pieces it composes live in huddle.services.
"""

from .meeting_manager import MeetingManager, get_meeting_manager
