"""Command-line entry point and REPL commands."""
