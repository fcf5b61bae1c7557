"""Logging, configuration and error handling utilities."""
