"""Nudgr backend: tasks, micro-bets, AI nudges and a real-time event stream."""

__version__ = "0.1.0"
