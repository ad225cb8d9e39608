"""
Intake of externally produced security events.
"""

from .consumer import IntakeConsumer, parse_message
from .database import EventDatabase
from .recorder import EventRecorder

__all__ = ["EventDatabase", "EventRecorder", "IntakeConsumer", "parse_message"]
