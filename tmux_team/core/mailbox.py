"""
Mailbox Module

Append-only JSONL inbox/outbox per worker, consumed through a byte-offset
cursor stored next to each file. Byte offsets avoid the ordering ambiguity of
timestamps written by processes with different clocks.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from .team_state import TeamPaths, now_iso
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

INBOX = 'inbox'
OUTBOX = 'outbox'
_BOXES = (INBOX, OUTBOX)


class Mailbox:
    """
    Inbox/outbox channel for the workers of one team.

    Files per worker, under workers/<name>/:
    - inbox.jsonl / outbox.jsonl: one JSON object per line
    - inbox.offset / outbox.offset: consumer cursor (byte offset)
    """

    def __init__(self, paths: TeamPaths):
        self.paths = paths

    def box_path(self, worker: str, box: str = INBOX) -> Path:
        self._check_box(box)
        return self.paths.worker_dir(worker) / f"{box}.jsonl"

    def cursor_path(self, worker: str, box: str = INBOX) -> Path:
        self._check_box(box)
        return self.paths.worker_dir(worker) / f"{box}.offset"

    def append(self, worker: str, message: Dict[str, Any], box: str = INBOX) -> None:
        """
        Append one message as a JSON line, creating directories as needed.

        A ``timestamp`` is added when the message has none.
        """
        record = dict(message)
        record.setdefault('timestamp', now_iso())
        line = json.dumps(record, ensure_ascii=False) + '\n'
        FileUtils.append_text(self.box_path(worker, box), line)

    def rotate_if_exceeds(self, worker: str, max_lines: int, box: str = OUTBOX) -> bool:
        """
        Keep only the most recent max_lines // 2 lines once max_lines is exceeded.

        The cursor moves back by the number of bytes dropped from the front,
        so lines already consumed stay consumed and unread kept lines are
        still delivered.

        Returns:
            bool: True if the file was rotated
        """
        path = self.box_path(worker, box)
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            return False

        line_starts = []
        offset = 0
        for raw in data.split(b'\n'):
            if raw.strip():
                line_starts.append(offset)
            offset += len(raw) + 1

        if len(line_starts) <= max_lines:
            return False

        keep_count = max_lines // 2
        dropped = line_starts[-keep_count] if keep_count else len(data)
        cursor = self._read_cursor(worker, box)

        FileUtils.write_text_atomic(path, data[dropped:].decode('utf-8', errors='replace'))
        self._write_cursor(worker, box, max(0, cursor - dropped))

        logger.info(f"Rotated {box} for {worker}: {len(line_starts)} -> {keep_count} lines")
        return True

    def read_new(self, worker: str, box: str = INBOX) -> List[Dict[str, Any]]:
        """
        Read messages appended since the last call.

        1. Load the cursor (default 0; reset to 0 if past end of file)
        2. Read from the cursor to EOF
        3. Parse complete lines only; a trailing partial line is left for later
        4. Advance the cursor to the end of the last complete line

        Returns:
            List of parsed messages, oldest first
        """
        path = self.box_path(worker, box)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return []

        cursor = self._read_cursor(worker, box)
        if cursor > size:
            logger.info(f"{box} for {worker} shrank below cursor ({cursor} > {size}), resetting")
            cursor = 0

        with open(path, 'rb') as f:
            f.seek(cursor)
            chunk = f.read()

        last_newline = chunk.rfind(b'\n')
        if last_newline < 0:
            # Nothing complete yet; persist a reset cursor if we made one
            self._write_cursor(worker, box, cursor)
            return []

        complete = chunk[:last_newline + 1]
        messages = self._parse_lines(complete, worker, box)
        self._write_cursor(worker, box, cursor + len(complete))
        return messages

    def read_all(self, worker: str, box: str = INBOX) -> List[Dict[str, Any]]:
        """Read every complete message, ignoring the cursor."""
        try:
            with open(self.box_path(worker, box), 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            return []

        last_newline = data.rfind(b'\n')
        if last_newline < 0:
            return []
        return self._parse_lines(data[:last_newline + 1], worker, box)

    def clear(self, worker: str, box: str = INBOX) -> None:
        """Truncate the box and reset its cursor."""
        FileUtils.write_text(self.box_path(worker, box), '')
        self._write_cursor(worker, box, 0)

    def cleanup_worker_files(self, worker: str) -> None:
        """Remove both boxes and their cursors."""
        for box in _BOXES:
            FileUtils.remove_file(self.box_path(worker, box))
            FileUtils.remove_file(self.cursor_path(worker, box))

    def _parse_lines(self, data: bytes, worker: str, box: str) -> List[Dict[str, Any]]:
        messages = []
        for raw in data.split(b'\n'):
            if not raw.strip():
                continue
            try:
                message = json.loads(raw.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping malformed {box} line for {worker}: {e}")
                continue
            if isinstance(message, dict):
                messages.append(message)
        return messages

    def _read_cursor(self, worker: str, box: str) -> int:
        try:
            value = int(self.cursor_path(worker, box).read_text(encoding='utf-8').strip() or 0)
        except (FileNotFoundError, ValueError):
            return 0
        return max(value, 0)

    def _write_cursor(self, worker: str, box: str, offset: int) -> None:
        FileUtils.write_text_atomic(self.cursor_path(worker, box), str(offset))

    @staticmethod
    def _check_box(box: str) -> None:
        if box not in _BOXES:
            raise ValueError(f"Unknown mailbox {box!r}; expected one of {_BOXES}")
