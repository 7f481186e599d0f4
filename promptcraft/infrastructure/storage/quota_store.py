"""匿名用户配额计数的本地键值存储。

计数保存在 <storage_root>/local_state.json 中，加载时读入，
每次变更后立即写回，跨进程重启保留。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from promptcraft.config.settings import settings
from promptcraft.infrastructure.logging.logger import logger


QUOTA_KEY = "anonymousMessageCount"


class AnonymousQuotaStore:
    """匿名对话次数计数器。"""

    def __init__(self, path: str | Path | None = None, limit: Optional[int] = None):
        self._path = Path(path) if path else Path(settings.storage_root) / "local_state.json"
        self.limit = settings.anonymous_quota_limit if limit is None else limit
        self._count = self._load().get(QUOTA_KEY, 0)

    @property
    def count(self) -> int:
        return self._count

    def exhausted(self) -> bool:
        return self._count >= self.limit

    def increment(self) -> int:
        self._count += 1
        self._save()
        return self._count

    def reset(self) -> None:
        if self._count == 0 and not self._path.exists():
            return
        self._count = 0
        data = self._load()
        data.pop(QUOTA_KEY, None)
        self._write(data)

    def _load(self) -> Dict[str, int]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read local state", extra={"extra": {"path": str(self._path), "error": str(e)}})
            return {}
        if not isinstance(data, dict):
            return {}
        result: Dict[str, int] = {}
        for key, value in data.items():
            try:
                result[key] = max(int(value), 0)
            except (TypeError, ValueError):
                continue
        return result

    def _save(self) -> None:
        data = self._load()
        data[QUOTA_KEY] = self._count
        self._write(data)

    def _write(self, data: Dict[str, int]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp_path, self._path)
