"""
Child agent runtime: process launching and output stream decoding.
"""

from .decoder import EventStreamDecoder, parse_record
from .launcher import (
    ContinuationStore,
    DispatchHandle,
    LaunchOptions,
    Launcher,
    ProcessHandle,
    ProcessLauncher
)

__all__ = [
    'EventStreamDecoder',
    'parse_record',
    'ContinuationStore',
    'DispatchHandle',
    'LaunchOptions',
    'Launcher',
    'ProcessHandle',
    'ProcessLauncher'
]
