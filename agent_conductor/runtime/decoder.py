"""
Incremental decoder for a child agent's newline-delimited JSON event stream.

Children write one JSON record per line on stdout. Chunks read from the pipe
arrive at arbitrary boundaries, so the decoder keeps a single pending partial
line and only parses complete lines. Lines that are not recognisable records
(diagnostic text, truncated JSON, unknown record types) are dropped.
"""

import codecs
import json
from typing import Any, Callable, Dict, List, Optional, Union

from ..models.core import Completed, ProgressEvent, TextFragment, ToolStart
from ..utils.logging import get_logger

logger = get_logger(__name__)

_EXIT_STATUS_KEYS = ("exitStatus", "exit_status", "exitCode")


def parse_record(line: str) -> Optional[ProgressEvent]:
    """
    Parse one complete output line into a progress event.

    Args:
        line: A single line without its terminator

    Returns:
        The decoded event, or None when the line is not a recognised record
    """
    line = line.strip()
    if not line:
        return None

    try:
        record = json.loads(line)
    except ValueError:
        return None

    if not isinstance(record, dict):
        return None

    return _record_to_event(record)


def _record_to_event(record: Dict[str, Any]) -> Optional[ProgressEvent]:
    record_type = record.get("type")

    if record_type == "text":
        delta = record.get("delta")
        if isinstance(delta, str):
            return TextFragment(text=delta)
        return None

    if record_type == "message_update":
        inner = record.get("assistantMessageEvent")
        if isinstance(inner, dict) and inner.get("type") == "text_delta":
            delta = inner.get("delta")
            if isinstance(delta, str):
                return TextFragment(text=delta)
        return None

    if record_type == "tool_start":
        name = record.get("name")
        if isinstance(name, str) and name:
            return ToolStart(name=name)
        return None

    if record_type == "tool_execution_start":
        name = record.get("toolName")
        if isinstance(name, str) and name:
            return ToolStart(name=name)
        return None

    if record_type in ("end", "agent_end"):
        for key in _EXIT_STATUS_KEYS:
            value = record.get(key)
            # bool is an int subclass
            if isinstance(value, int) and not isinstance(value, bool):
                return Completed(exit_status=value)
        return Completed(exit_status=0)

    return None


class EventStreamDecoder:
    """Reassembles progress events from arbitrarily chunked stream output."""

    def __init__(self, on_event: Optional[Callable[[ProgressEvent], None]] = None,
                 stream_name: str = "stdout"):
        self.on_event = on_event
        self.stream_name = stream_name
        self._buffer = ""
        self._bytes_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False
        self.discarded_lines = 0

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def pending(self) -> str:
        """The buffered partial line not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> List[ProgressEvent]:
        """
        Consume one chunk of output.

        Args:
            chunk: Raw bytes or already-decoded text of any size

        Returns:
            Events decoded from the lines this chunk completed, in stream order
        """
        if self._finished:
            return []

        if isinstance(chunk, bytes):
            text = self._bytes_decoder.decode(chunk)
        else:
            text = chunk

        if not text:
            return []

        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._emit_lines(lines)

    def finish(self) -> List[ProgressEvent]:
        """
        Flush the stream: give the buffered remainder one last parse attempt.

        Safe to call more than once; later calls return nothing.
        """
        if self._finished:
            return []

        self._finished = True
        remainder = self._buffer + self._bytes_decoder.decode(b"", final=True)
        self._buffer = ""
        return self._emit_lines(remainder.split("\n"))

    def _emit_lines(self, lines: List[str]) -> List[ProgressEvent]:
        events = []
        for line in lines:
            event = parse_record(line.rstrip("\r"))
            if event is None:
                if line.strip():
                    self.discarded_lines += 1
                    logger.debug("Discarded stream noise", stream=self.stream_name, line=line[:200])
                continue
            events.append(event)
            if self.on_event is not None:
                self.on_event(event)
        return events
