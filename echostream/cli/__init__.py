"""Command-line interface for echostream."""
