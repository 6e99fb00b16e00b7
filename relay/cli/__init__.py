"""Command-line interface for Relay."""
