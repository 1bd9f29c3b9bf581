"""
File Utilities Module

JSON and YAML helpers for the registry, state and status files. Writers go
through a temp file plus ``os.replace`` so concurrent readers never see a
partially written document.
"""

import json
import os
import tempfile
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


class FileUtils:
    """
    File operation utilities shared by every on-disk store.
    """

    @staticmethod
    def load_json(file_path: Path) -> Any:
        """Read a JSON document, letting OSError/JSONDecodeError propagate."""
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    @staticmethod
    def write_json_atomic(file_path: Path, data: Any, indent: int = 2) -> None:
        """
        Write JSON via a sibling temp file and atomic rename.

        Args:
            file_path: Destination path
            data: JSON-serializable data
            indent: JSON indentation
        """
        text = json.dumps(data, indent=indent, ensure_ascii=False)
        FileUtils.write_text_atomic(file_path, text + "\n")

    @staticmethod
    def write_text_atomic(file_path: Path, text: str) -> None:
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{file_path.name}.", suffix=".tmp", dir=str(file_path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, file_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def read_yaml(file_path: Path) -> Optional[Dict[str, Any]]:
        """
        Read a YAML document, returning None when absent.

        Raises:
            yaml.YAMLError: if the file exists but is malformed
        """
        if not file_path.exists():
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def remove_if_exists(file_path: Path) -> bool:
        """Delete a file, returning False if it was already gone."""
        try:
            Path(file_path).unlink()
            return True
        except FileNotFoundError:
            return False
