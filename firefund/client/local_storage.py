"""
Durable key-value storage for the field client
One JSON file, one blob per namespace key
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class LocalStorage:
    """JSON file backed key-value store"""

    def __init__(self, path):
        self.path = Path(path)

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Local storage {self.path} unreadable, starting empty: {e}")
            return {}

        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def get_item(self, key: str) -> Optional[Any]:
        return self._read_all().get(key)

    def set_item(self, key: str, value: Any):
        """Store ``value`` under ``key``; the file is replaced atomically"""
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def remove_item(self, key: str):
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)
