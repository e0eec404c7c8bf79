from __future__ import annotations


class OMRError(Exception):
    """Base class for failures the caller has to react to."""


class ImageReadError(OMRError, ValueError):
    """The input could not be decoded into an image; ask for a new capture."""


class ProcessingError(OMRError):
    """The vision runtime failed while working on a readable image."""
