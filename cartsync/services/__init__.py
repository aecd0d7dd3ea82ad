"""Shared services: money helpers and the notification emitter."""
