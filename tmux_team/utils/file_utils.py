"""
File Utilities Module

Common file operations for the team state directory. Every JSON write goes
through a temp file and an atomic rename so that readers never observe a
half-written record.
"""

import json
import logging
import os
import shutil
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class FileUtils:
    """
    File operation utilities with error handling and validation.
    """

    @staticmethod
    def read_json(file_path: Path) -> Optional[Any]:
        """
        Safely read a JSON file.

        Missing, unreadable and malformed files all read as None. A crashed
        writer can leave a partial file behind and that must not wedge readers.

        Args:
            file_path: Path to JSON file

        Returns:
            Parsed JSON data or None
        """
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.debug(f"Invalid JSON in {file_path}: {e}")
            return None
        except OSError as e:
            logger.warning(f"Error reading {file_path}: {e}")
            return None

    @staticmethod
    def write_json(file_path: Path, data: Any, indent: Optional[int] = 2) -> None:
        """
        Atomically write a JSON file (temp file, then rename).

        Args:
            file_path: Path to write JSON file
            data: Data to write
            indent: JSON indentation

        Raises:
            OSError: if the file cannot be written
        """
        FileUtils.write_text_atomic(file_path, json.dumps(data, indent=indent, ensure_ascii=False))

    @staticmethod
    def write_text_atomic(file_path: Path, content: str) -> None:
        """
        Replace a file's content through a temp file and an atomic rename.

        Raises:
            OSError: if the file cannot be written
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = file_path.with_name(f"{file_path.name}.tmp.{os.getpid()}")

        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(content)
            os.replace(tmp_path, file_path)
        except OSError:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise

    @staticmethod
    def try_write_json(file_path: Path, data: Any, indent: Optional[int] = 2) -> bool:
        """Best-effort variant of write_json. Returns False instead of raising."""
        try:
            FileUtils.write_json(file_path, data, indent=indent)
            return True
        except OSError as e:
            logger.warning(f"Error writing JSON to {file_path}: {e}")
            return False

    @staticmethod
    def read_yaml(file_path: Path) -> Optional[Dict[str, Any]]:
        """
        Safely read YAML file.

        Args:
            file_path: Path to YAML file

        Returns:
            Dict containing YAML data or None if error
        """
        try:
            if not file_path.exists():
                logger.debug(f"YAML file not found: {file_path}")
                return None

            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            return data or {}

        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Error reading YAML {file_path}: {e}")
            return None

    @staticmethod
    def append_text(file_path: Path, content: str) -> None:
        """Append text, creating parent directories first."""
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'a', encoding='utf-8') as f:
            f.write(content)

    @staticmethod
    def write_text(file_path: Path, content: str) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(content)

    @staticmethod
    def remove_file(file_path: Path) -> bool:
        """
        Delete a file if present.

        Returns:
            bool: True if a file was removed
        """
        try:
            file_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Error removing {file_path}: {e}")
            return False

    @staticmethod
    def remove_tree(dir_path: Path) -> None:
        """Remove a directory tree, ignoring a missing directory."""
        shutil.rmtree(dir_path, ignore_errors=True)
