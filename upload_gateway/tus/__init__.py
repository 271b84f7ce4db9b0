"""Compact tus 1.0.0 server: creation, creation-with-upload, creation-defer-length, termination, expiration."""
from upload_gateway.tus.server import TUS_RESUMABLE, TusError, TusServer

__all__ = ["TUS_RESUMABLE", "TusError", "TusServer"]
