"""Shared utilities: exceptions, logging and task helpers."""
