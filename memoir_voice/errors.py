"""
Exceptions raised inside the orchestration core.

Webhook handlers catch these (and everything else) at the HTTP boundary so the
providers always receive a well-formed response.
"""


class MemoirVoiceError(Exception):
    """Base class for service errors."""


class CallRecordError(MemoirVoiceError):
    """The durable call row could not be created or loaded."""


class SignatureError(MemoirVoiceError):
    """A webhook signature was missing or did not match."""
