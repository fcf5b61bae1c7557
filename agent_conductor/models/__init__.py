"""Data models and exceptions for Agent Conductor."""
