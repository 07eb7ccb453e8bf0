"""Pydantic schemas for API payloads."""

from .calls import CallAnswerRequest, CallEndRequest, CallInitiateRequest, IceCandidateRequest, SignalAck
from .events import EventPostRequest
from .messages import MessageCreate

__all__ = [
    "CallAnswerRequest",
    "CallEndRequest",
    "CallInitiateRequest",
    "IceCandidateRequest",
    "SignalAck",
    "EventPostRequest",
    "MessageCreate",
]
