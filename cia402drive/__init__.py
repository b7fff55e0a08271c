"""CiA 402 drive profile: status reports, object storage, state machine, operation modes and motor layer."""

__version__ = "0.1.0"
__all__ = ["status", "objects", "state402", "modes", "motor"]