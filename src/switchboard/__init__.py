"""Switchboard: presence and call-signaling router.

This package routes topic-tagged messages between UI surfaces (a roster
sidebar and per-call chat windows) and one pluggable signaling backend,
keeping the single source of truth for presence and active calls.
"""

__version__ = "0.1.0"
