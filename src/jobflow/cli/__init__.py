"""Typer sub-applications for the jobflow command."""
