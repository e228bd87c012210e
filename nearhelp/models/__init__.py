"""SQLAlchemy models."""

from __future__ import annotations

from nearhelp.models.chat_session import ChatParticipant, ChatSession
from nearhelp.models.emergency import Emergency
from nearhelp.models.emergency_contact import EmergencyContact
from nearhelp.models.helper_alert import HelperAlert
from nearhelp.models.message import Message
from nearhelp.models.user import User

__all__ = [
    "User",
    "ChatParticipant",
    "ChatSession",
    "Emergency",
    "EmergencyContact",
    "HelperAlert",
    "Message",
]
