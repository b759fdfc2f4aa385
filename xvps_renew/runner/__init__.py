"""Renewal workflow, reporting and the command-line entry point."""
