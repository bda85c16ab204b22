"""
notevault - Offline-first storage and synchronization core for personal notes.

This package persists notes and notebooks through interchangeable storage
backends, shields every storage call behind retry and circuit-breaker
protection, and reconciles a local replica with a remote replica of the same
collection.

This version uses asynchronous (anyio) operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notevault")
except PackageNotFoundError:
    __version__ = "0.3.0"
