"""Error taxonomy for per-message processing."""

from __future__ import annotations


class RuleEngineError(Exception):
    """Base class for rule engine failures."""


class DecodeError(RuleEngineError):
    """The message payload could not be turned into a reading."""


class StoreError(RuleEngineError):
    """A history store query or write failed."""


class StoreTimeoutError(StoreError):
    """A history store call did not finish before the message deadline."""


class ChannelClosedError(RuleEngineError):
    """The delivery channel was closed; the consumer cannot continue."""
