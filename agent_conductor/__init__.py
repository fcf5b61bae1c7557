"""
Agent Conductor: run child coding agents as delegated roles or as a fixed
pipeline, with live status tracking.
"""

__version__ = "0.1.0"
