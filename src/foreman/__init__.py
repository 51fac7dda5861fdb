"""Foreman: orchestration kernel for concurrent coding agents."""

__version__ = "0.1.0"
