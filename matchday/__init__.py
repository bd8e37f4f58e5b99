"""Matchday: workflow orchestration for the football newsletter pipeline."""

__version__ = "0.4.0"
