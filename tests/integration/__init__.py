"""Integration tests that run the CLI end to end against a sample repository."""
