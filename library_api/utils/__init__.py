"""Input validators and CLI output helpers."""
