"""Workflow load-test harness for stateful escrow-style contracts."""

__version__ = "0.1.0"
