"""Incremental parser for ``text/event-stream`` bodies.

Feed decoded text as it arrives; complete records come back once their
blank-line terminator has been seen.  Partial records stay buffered across
calls.  Comment-only records (heartbeats) produce nothing.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SSERecord:
    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None


class SSEParser:
    def __init__(self) -> None:
        self._buffer = ""
        # A trailing "\r" might be the first half of a "\r\n" split across chunks.
        self._held_cr = False

    def feed(self, text: str) -> list[SSERecord]:
        if self._held_cr:
            text = "\r" + text
            self._held_cr = False
        if text.endswith("\r"):
            text = text[:-1]
            self._held_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        records: list[SSERecord] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            record = self._parse_block(block)
            if record is not None:
                records.append(record)
        return records

    def reset(self) -> None:
        """Drop any partial record (new connection)."""
        self._buffer = ""
        self._held_cr = False

    @staticmethod
    def _parse_block(block: str) -> SSERecord | None:
        data_lines: list[str] = []
        event = record_id = None
        retry = None
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "data":
                data_lines.append(value)
            elif field == "event":
                event = value
            elif field == "id":
                record_id = value
            elif field == "retry" and value.isdigit():
                retry = int(value)
        if not data_lines:
            return None
        return SSERecord(data="\n".join(data_lines), event=event, id=record_id, retry=retry)
