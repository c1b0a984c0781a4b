"""Command-line client for Foresight."""
