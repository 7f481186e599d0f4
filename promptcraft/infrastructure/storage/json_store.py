import asyncio
import json
import os
import re
import shutil
from collections import defaultdict
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import uuid4

from promptcraft.config.settings import settings
from promptcraft.domain.conversation import (
    Conversation,
    ConversationStore,
    ConversationSummary,
    Message,
    derive_title,
    format_ts,
    parse_ts,
    utcnow,
)
from promptcraft.domain.exceptions import PersistenceError, ValidationError
from promptcraft.infrastructure.logging.logger import logger


_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.@-]+$")

WatchKey = Tuple[str, ...]


class JsonConversationStore(ConversationStore):
    """基于 JSON 文件的会话存储。

    目录结构: <root>/users/<owner_id>/conversations/<conversation_id>/{meta.json,messages.jsonl}

    订阅接口为全量快照：每次变更都推送完整列表/完整消息日志，而不是增量。
    变更通知只覆盖同一进程内的写入。
    """

    def __init__(self, root: str | Path | None = None, title_max_chars: Optional[int] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._users_root = self._root / "users"
        self._users_root.mkdir(parents=True, exist_ok=True)
        self._title_max_chars = title_max_chars or settings.title_max_chars
        self._watchers: Dict[WatchKey, List[asyncio.Queue]] = defaultdict(list)

    # ---- 写操作 ----

    async def create_conversation(self, owner_id: str, first_message: Message) -> str:
        first_message.validate()
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root(owner_id) / cid
        now = utcnow()
        conv = Conversation(
            id=cid,
            owner_id=owner_id,
            title=derive_title(first_message.text, self._title_max_chars),
            created_at=now,
            updated_at=now,
        )
        try:
            cdir.mkdir(parents=True, exist_ok=False)
            self._append_line(cdir, first_message)
            self._write_meta(cdir, conv)
        except PersistenceError:
            shutil.rmtree(cdir, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(cdir, ignore_errors=True)
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        logger.info("Created conversation", extra={"extra": {"owner_id": owner_id, "conversation_id": cid}})
        self._notify(("list", owner_id))
        self._notify(("conv", owner_id, cid))
        return cid

    async def append_message(self, owner_id: str, conversation_id: str, message: Message) -> None:
        message.validate()
        cdir = self._conv_dir(owner_id, conversation_id)
        conv = self._read_meta(cdir, owner_id)
        msgs_path = cdir / "messages.jsonl"
        try:
            offset = msgs_path.stat().st_size if msgs_path.exists() else 0
            self._append_line(cdir, message)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        # updated_at 必须随追加顺序严格递增
        conv.updated_at = max(utcnow(), conv.updated_at + timedelta(microseconds=1))
        try:
            self._write_meta(cdir, conv)
        except PersistenceError:
            # meta 写入失败时撤销刚追加的行，调用方看到的失败即未落盘
            self._truncate(msgs_path, offset)
            raise
        self._notify(("list", owner_id))
        self._notify(("conv", owner_id, conversation_id))

    async def delete_conversation(self, owner_id: str, conversation_id: str) -> None:
        cdir = self._conv_dir(owner_id, conversation_id)
        if not cdir.exists():
            return
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e))
        logger.info(
            "Deleted conversation",
            extra={"extra": {"owner_id": owner_id, "conversation_id": conversation_id}},
        )
        self._notify(("list", owner_id))
        self._notify(("conv", owner_id, conversation_id))

    # ---- 读操作 ----

    async def get_conversation(self, owner_id: str, conversation_id: str) -> Optional[Conversation]:
        cdir = self._conv_dir(owner_id, conversation_id)
        if not (cdir / "meta.json").exists():
            return None
        conv = self._read_meta(cdir, owner_id)
        conv.messages = self._read_messages(cdir)
        return conv

    async def list_conversations(self, owner_id: str) -> List[ConversationSummary]:
        return self._read_summaries(owner_id)

    async def list_messages(self, owner_id: str, conversation_id: str) -> List[Message]:
        return self._read_messages(self._conv_dir(owner_id, conversation_id))

    # ---- 订阅 ----

    async def subscribe_conversation_list(self, owner_id: str) -> AsyncIterator[List[ConversationSummary]]:
        key = ("list", owner_id)
        queue = self._watch(key)
        try:
            while True:
                yield self._read_summaries(owner_id)
                await self._next_change(queue)
        finally:
            self._unwatch(key, queue)

    async def subscribe_conversation(self, owner_id: str, conversation_id: str) -> AsyncIterator[List[Message]]:
        key = ("conv", owner_id, conversation_id)
        queue = self._watch(key)
        try:
            while True:
                yield self._read_messages(self._conv_dir(owner_id, conversation_id))
                await self._next_change(queue)
        finally:
            self._unwatch(key, queue)

    # ---- 辅助方法 ----

    def _conv_root(self, owner_id: str) -> Path:
        return self._users_root / self._segment(owner_id) / "conversations"

    def _conv_dir(self, owner_id: str, conversation_id: str) -> Path:
        return self._conv_root(owner_id) / self._segment(conversation_id)

    @staticmethod
    def _segment(value: str) -> str:
        if not value or value in {".", ".."} or not _SEGMENT_RE.match(value):
            raise ValidationError(code="INVALID_ID", message=f"invalid path segment: {value!r}")
        return value

    def _read_summaries(self, owner_id: str) -> List[ConversationSummary]:
        root = self._conv_root(owner_id)
        items: List[ConversationSummary] = []
        if not root.exists():
            return items
        for cdir in root.glob("*/"):
            if not (cdir / "meta.json").exists():
                continue
            try:
                conv = self._read_meta(cdir, owner_id)
            except PersistenceError:
                logger.warning("Skipped unreadable conversation", extra={"extra": {"path": str(cdir)}})
                continue
            items.append(ConversationSummary(id=conv.id, title=conv.title, updated_at=conv.updated_at))
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def _read_meta(self, cdir: Path, owner_id: str) -> Conversation:
        meta_path = cdir / "meta.json"
        if not meta_path.exists():
            raise PersistenceError(code="CONVERSATION_NOT_FOUND", message=cdir.name, http_status=404)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return Conversation(
                id=data["id"],
                owner_id=data.get("owner_id") or owner_id,
                title=data.get("title") or "",
                created_at=parse_ts(data["created_at"]),
                updated_at=parse_ts(data["updated_at"]),
            )
        except (OSError, ValueError, KeyError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))

    def _read_messages(self, cdir: Path) -> List[Message]:
        msgs_path = cdir / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            if not line.strip():
                continue
            try:
                items.append(Message.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipped invalid message line", extra={"extra": {"path": str(msgs_path), "error": str(e)}})
        # sort 稳定，created_at 相同时保持写入顺序
        items.sort(key=lambda m: m.created_at)
        return items

    @staticmethod
    def _append_line(cdir: Path, message: Message) -> None:
        line = json.dumps(message.to_dict(), ensure_ascii=False)
        with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    @staticmethod
    def _truncate(path: Path, offset: int) -> None:
        try:
            with path.open("r+b") as f:
                f.truncate(offset)
        except OSError as e:
            logger.error(
                "Failed to roll back appended message",
                extra={"extra": {"path": str(path), "offset": offset, "error": str(e)}},
            )

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj: Dict[str, Any] = {
            "id": conv.id,
            "owner_id": conv.owner_id,
            "title": conv.title,
            "created_at": format_ts(conv.created_at),
            "updated_at": format_ts(conv.updated_at),
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def _watch(self, key: WatchKey) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers[key].append(queue)
        return queue

    def _unwatch(self, key: WatchKey, queue: asyncio.Queue) -> None:
        queues = self._watchers.get(key)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            pass
        if not queues:
            del self._watchers[key]

    def _notify(self, key: WatchKey) -> None:
        for queue in list(self._watchers.get(key, [])):
            queue.put_nowait(None)

    @staticmethod
    async def _next_change(queue: asyncio.Queue) -> None:
        await queue.get()
        # 合并积压的通知，只推送一次最新快照
        while not queue.empty():
            queue.get_nowait()
