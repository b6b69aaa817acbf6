from __future__ import annotations


class FusionError(Exception):
    """Base class for errors raised by the fusion server."""


class DecodeError(FusionError):
    """A payload could not be decoded into a known message shape."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"{topic}: {reason}")
        self.topic = topic
        self.reason = reason


class ConfigPersistError(FusionError):
    """The configuration file could not be written."""


class UpstreamError(FusionError):
    """The fleet-tracking API answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"upstream API error {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body
