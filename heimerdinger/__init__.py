"""Heimerdinger: a chat bridge for Claude Code sessions."""

__version__ = "0.1.0"
