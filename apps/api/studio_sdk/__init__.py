"""Async client for the studio API with a local pre-flight gate and debounced autosave."""

from .autosave import DebouncedSessionSaver
from .client import GenerationInFlightError, StudioAPIError, StudioClient

__all__ = ["DebouncedSessionSaver", "GenerationInFlightError", "StudioAPIError", "StudioClient"]
