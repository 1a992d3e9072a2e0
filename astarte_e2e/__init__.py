"""End-to-end validation harness for the Astarte platform."""

__version__ = "0.1.0"
