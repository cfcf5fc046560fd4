"""Shared services: logging, settings, event bus and the device channel."""
