"""会话控制器核心模块。

负责一次提交的完整生命周期：乐观插入用户消息、持久化、组装有界历史、
调用生成、处理成功/失败、模拟逐字输出以及失败回滚；同时维护会话列表
与当前会话的订阅，把远端全量快照按消息 id 合并进展示状态。

单个会话在一个事件循环中协作式运行，同一时间只允许一个进行中的提交。
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from promptcraft.agents.generation import GenerateResponse, GenerationClient
from promptcraft.agents.stream_simulator import MessageStreamSimulator
from promptcraft.config.settings import settings
from promptcraft.domain.conversation import ConversationStore, Message, merge_messages
from promptcraft.domain.exceptions import (
    ERROR_SUMMARIES,
    BusinessError,
    ErrorKind,
    GenerationCause,
    ValidationError,
)
from promptcraft.domain.models import HistoryEntry
from promptcraft.domain.session import SessionState, SubmissionPhase, SubmitOutcome
from promptcraft.infrastructure.logging.logger import logger
from promptcraft.infrastructure.storage.quota_store import AnonymousQuotaStore
from promptcraft.prompts import PERSONA_VERSION, load_system_prompt


StateListener = Callable[[SessionState], None]

TIMEOUT_MESSAGE = "The AI model did not respond in time. Please try again."


def assemble_history(messages: Iterable[Message]) -> List[HistoryEntry]:
    """把展示中的消息映射为生成调用的有界历史，error 消息不进入上下文。"""

    history: List[HistoryEntry] = []
    for m in messages:
        if m.role == "user":
            history.append(HistoryEntry(speaker="user", text=m.text))
        elif m.role == "assistant":
            history.append(HistoryEntry(speaker="model", text=m.text))
    return history


class ChatSessionController:
    def __init__(
        self,
        generator: GenerationClient,
        store: Optional[ConversationStore] = None,
        quota: Optional[AnonymousQuotaStore] = None,
        simulator: Optional[MessageStreamSimulator] = None,
        persona: Optional[str] = None,
        generation_timeout: Optional[float] = None,
    ):
        self.state = SessionState()
        self._generator = generator
        self._store = store
        self._quota = quota or AnonymousQuotaStore()
        self._simulator = simulator or MessageStreamSimulator()
        self._persona = persona or load_system_prompt(settings.persona_locale)
        self.persona_version = PERSONA_VERSION if persona is None else "custom"
        self._timeout = generation_timeout or settings.generation_timeout
        self._listeners: List[StateListener] = []
        # 每次切换会话/登录状态递增，进行中的提交据此判断结果是否已过期
        self._epoch = 0
        # 尚未在远端快照中出现的本地消息（进行中的用户消息、未落盘的 error）
        self._local_only_ids: set[str] = set()
        self._delivering_id: Optional[str] = None
        self._list_task: Optional[asyncio.Task] = None
        self._conversation_task: Optional[asyncio.Task] = None

    @property
    def quota(self) -> AnonymousQuotaStore:
        return self._quota

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ---- 提交 ----

    async def submit(self, text: str) -> SubmitOutcome:
        """提交一条用户输入。

        空输入与忙碌时的重复提交直接返回 "ignored"，不产生任何状态变化。
        """
        turn = (text or "").strip()
        if not turn:
            return SubmitOutcome(status="ignored", error_kind=ErrorKind.EMPTY_INPUT)
        if self.state.busy:
            logger.info("Submit ignored while busy", extra={"extra": {"phase": self.state.phase.value}})
            return SubmitOutcome(status="ignored")

        owner_id = self.state.owner_id
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "persona_version": self.persona_version,
            "owner_id": owner_id,
            "conversation_id": self.state.active_conversation_id,
        }

        if owner_id is None and self._quota.exhausted():
            self._log(logging.INFO, "Anonymous quota exceeded", log_ctx, count=self._quota.count)
            return await self._fail(ErrorKind.QUOTA_EXCEEDED, None, None, log_ctx)

        epoch = self._epoch
        history = assemble_history(self.state.messages)
        user_msg = Message.create("user", turn)
        log_ctx["message_id"] = user_msg.id

        # 1. 乐观插入
        self.state.messages.append(user_msg)
        if owner_id is not None:
            self._local_only_ids.add(user_msg.id)
        self.state.pending_user_message_id = user_msg.id
        self.state.last_error = None
        self.state.phase = SubmissionPhase.SUBMITTING
        self._emit()

        # 2. 持久化用户消息；失败则回滚
        conversation_id = self.state.active_conversation_id
        if owner_id is not None:
            try:
                if conversation_id is None:
                    conversation_id = await self._store.create_conversation(owner_id, user_msg)
                    created = True
                else:
                    await self._store.append_message(owner_id, conversation_id, user_msg)
                    created = False
            except BusinessError as e:
                if epoch != self._epoch:
                    return self._abandoned(user_msg, log_ctx)
                self._log(logging.ERROR, "Failed to store user message", log_ctx, code=e.code, error=e.message)
                self._rollback(user_msg.id)
                self.state.last_error = ErrorKind.PERSISTENCE_FAILED
                self.state.phase = SubmissionPhase.FAILED
                self._emit()
                return SubmitOutcome(
                    status="failed",
                    error_kind=ErrorKind.PERSISTENCE_FAILED,
                    user_message_id=user_msg.id,
                )
            if epoch != self._epoch:
                return self._abandoned(user_msg, log_ctx)
            if created:
                self.state.active_conversation_id = conversation_id
                log_ctx["conversation_id"] = conversation_id
                self._log(logging.INFO, "Created new conversation", log_ctx)
                self._watch_conversation(owner_id, conversation_id)

        # 3. 生成
        self.state.phase = SubmissionPhase.AWAITING_GENERATION
        self._emit()
        response = await self._call_generation(turn, history, log_ctx)
        if epoch != self._epoch:
            return self._abandoned(user_msg, log_ctx)
        self.state.pending_user_message_id = None

        if not response.success:
            return await self._fail(response.kind, response.error, response.cause, log_ctx, user_msg.id, conversation_id)

        # 4. 先持久化回答，再展示
        assistant_msg = Message.create("assistant", response.data)
        # 落盘前就标记，快照可能在 append 返回之前到达
        self._delivering_id = assistant_msg.id
        if owner_id is not None:
            try:
                await self._store.append_message(owner_id, conversation_id, assistant_msg)
            except BusinessError as e:
                if epoch != self._epoch:
                    return self._abandoned(user_msg, log_ctx)
                self._log(logging.ERROR, "Failed to store assistant message", log_ctx, code=e.code, error=e.message)
                return await self._fail(ErrorKind.PERSISTENCE_FAILED, None, None, log_ctx, user_msg.id, conversation_id)
            if epoch != self._epoch:
                return self._abandoned(user_msg, log_ctx)

        # 5. 模拟逐字输出
        self.state.phase = SubmissionPhase.DELIVERING
        self.state.streaming_buffer = ""
        self._emit()
        completed = await self._simulator.play(assistant_msg.text, self._on_stream_update)
        if not completed or epoch != self._epoch:
            return self._abandoned(user_msg, log_ctx)

        # 6. Settled
        self._delivering_id = None
        self.state.streaming_buffer = None
        if all(m.id != assistant_msg.id for m in self.state.messages):
            self.state.messages.append(assistant_msg)
        if owner_id is None:
            self._quota.increment()
        self.state.phase = SubmissionPhase.SETTLED
        self._emit()
        self._log(logging.INFO, "Submission settled", log_ctx, assistant_message_id=assistant_msg.id)
        return SubmitOutcome(status="settled", user_message_id=user_msg.id, reply=assistant_msg)

    async def _call_generation(self, turn: str, history: List[HistoryEntry], log_ctx: Dict[str, Any]) -> GenerateResponse:
        # Provider 调用是阻塞的 HTTP 请求，放到线程中执行；超时只放弃等待，不会中断线程
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._generator.generate, turn, history, self._persona),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._log(logging.ERROR, "Generation timed out", log_ctx, timeout=self._timeout)
            return GenerateResponse.failed(GenerationCause.UNKNOWN, TIMEOUT_MESSAGE)

    async def _fail(
        self,
        kind: ErrorKind,
        text: Optional[str],
        cause: Optional[GenerationCause],
        log_ctx: Dict[str, Any],
        user_message_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SubmitOutcome:
        """进入 Failed：追加一条 error 消息，有会话时尽力持久化。"""

        err = Message.create("error", text or ERROR_SUMMARIES[kind])
        self.state.messages.append(err)
        if self.state.owner_id is not None:
            self._local_only_ids.add(err.id)
        self.state.pending_user_message_id = None
        self.state.streaming_buffer = None
        self._delivering_id = None
        self.state.last_error = kind
        self.state.phase = SubmissionPhase.FAILED
        self._emit()
        self._log(
            logging.WARNING,
            "Submission failed",
            log_ctx,
            kind=kind.value,
            cause=cause.value if cause else None,
        )

        owner_id = self.state.owner_id
        if owner_id is not None and conversation_id is not None:
            try:
                await self._store.append_message(owner_id, conversation_id, err)
            except BusinessError as e:
                self._log(logging.ERROR, "Failed to store error message", log_ctx, code=e.code, error=e.message)
        return SubmitOutcome(
            status="failed",
            error_kind=kind,
            cause=cause,
            user_message_id=user_message_id,
            reply=err,
        )

    def _rollback(self, message_id: str) -> None:
        self.state.messages = [m for m in self.state.messages if m.id != message_id]
        self._local_only_ids.discard(message_id)
        if self.state.pending_user_message_id == message_id:
            self.state.pending_user_message_id = None

    def _abandoned(self, user_msg: Message, log_ctx: Dict[str, Any]) -> SubmitOutcome:
        self._log(logging.INFO, "Discarded result of abandoned submission", log_ctx)
        return SubmitOutcome(status="abandoned", user_message_id=user_msg.id)

    def _on_stream_update(self, prefix: str) -> None:
        self.state.streaming_buffer = prefix
        self._emit()

    # ---- 会话切换 ----

    async def select_conversation(self, conversation_id: str) -> None:
        if conversation_id == self.state.active_conversation_id:
            return
        self._abandon_in_flight()
        self.state.active_conversation_id = conversation_id
        self.state.messages = []
        self._local_only_ids.clear()
        owner_id = self.state.owner_id
        if owner_id is not None:
            # 返回前先装入当前日志，紧接着的 submit() 才能拿到完整历史
            epoch = self._epoch
            self._cancel_task(self._conversation_task)
            try:
                conv = await self._store.get_conversation(owner_id, conversation_id)
            except BusinessError as e:
                logger.error(
                    "Failed to load conversation",
                    extra={"extra": {"owner_id": owner_id, "conversation_id": conversation_id, "error": e.message}},
                )
                conv = None
            if epoch != self._epoch or conversation_id != self.state.active_conversation_id:
                return
            if conv is not None:
                self.state.messages = merge_messages(conv.messages, self.state.messages, self._local_only_ids)
            self._watch_conversation(owner_id, conversation_id)
        self._emit()

    async def start_new_conversation(self) -> None:
        self._abandon_in_flight()
        self._cancel_task(self._conversation_task)
        self._conversation_task = None
        self.state.active_conversation_id = None
        self.state.messages = []
        self._local_only_ids.clear()
        self._emit()

    async def delete_conversation(self, conversation_id: str) -> bool:
        """删除整个会话；匿名模式下无操作。"""

        owner_id = self.state.owner_id
        if owner_id is None:
            return False
        try:
            await self._store.delete_conversation(owner_id, conversation_id)
        except BusinessError as e:
            logger.error(
                "Failed to delete conversation",
                extra={"extra": {"owner_id": owner_id, "conversation_id": conversation_id, "error": e.message}},
            )
            return False
        if conversation_id == self.state.active_conversation_id:
            await self.start_new_conversation()
        return True

    # ---- 登录状态 ----

    async def bind_owner(self, owner_id: str) -> None:
        """绑定用户：重置匿名计数，开始订阅该用户的会话列表。"""

        if self._store is None:
            raise ValidationError(code="STORE_REQUIRED", message="binding an owner requires a conversation store")
        if owner_id == self.state.owner_id:
            return
        self._reset_session()
        self.state.owner_id = owner_id
        self._quota.reset()
        self._list_task = asyncio.get_running_loop().create_task(self._consume_list(owner_id))
        self._emit()

    async def unbind_owner(self) -> None:
        self._reset_session()
        self.state.owner_id = None
        self._emit()

    async def close(self) -> None:
        self._abandon_in_flight()
        tasks = [t for t in (self._list_task, self._conversation_task) if t is not None]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._list_task = None
        self._conversation_task = None

    def _reset_session(self) -> None:
        self._abandon_in_flight()
        self._cancel_task(self._list_task)
        self._cancel_task(self._conversation_task)
        self._list_task = None
        self._conversation_task = None
        self.state.active_conversation_id = None
        self.state.messages = []
        self.state.conversations = []
        self.state.last_error = None
        self._local_only_ids.clear()

    def _abandon_in_flight(self) -> None:
        """停止逐字输出并让进行中的提交失效；生成调用本身不会被中断。"""

        self._epoch += 1
        self._simulator.cancel()
        self._delivering_id = None
        self.state.streaming_buffer = None
        self.state.pending_user_message_id = None
        if self.state.busy:
            self.state.phase = SubmissionPhase.IDLE

    # ---- 订阅 ----

    def _watch_conversation(self, owner_id: str, conversation_id: str) -> None:
        self._cancel_task(self._conversation_task)
        self._conversation_task = asyncio.get_running_loop().create_task(
            self._consume_conversation(owner_id, conversation_id)
        )

    async def _consume_conversation(self, owner_id: str, conversation_id: str) -> None:
        stream = self._store.subscribe_conversation(owner_id, conversation_id)
        try:
            async for snapshot in stream:
                if owner_id != self.state.owner_id or conversation_id != self.state.active_conversation_id:
                    break
                self._apply_conversation_snapshot(snapshot)
        except BusinessError as e:
            logger.error(
                "Conversation subscription failed",
                extra={"extra": {"owner_id": owner_id, "conversation_id": conversation_id, "error": e.message}},
            )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _consume_list(self, owner_id: str) -> None:
        stream = self._store.subscribe_conversation_list(owner_id)
        try:
            async for summaries in stream:
                if owner_id != self.state.owner_id:
                    break
                self.state.conversations = list(summaries)
                self._emit()
        except BusinessError as e:
            logger.error("Conversation list subscription failed", extra={"extra": {"owner_id": owner_id, "error": e.message}})
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _apply_conversation_snapshot(self, snapshot: List[Message]) -> None:
        self._local_only_ids.difference_update(m.id for m in snapshot)
        # 逐字输出期间先隐藏已落盘的回答，避免与 streaming_buffer 重复展示
        visible = [m for m in snapshot if m.id != self._delivering_id]
        self.state.messages = merge_messages(visible, self.state.messages, self._local_only_ids)
        self._emit()

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done():
            task.cancel()

    # ---- 辅助方法 ----

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("State listener failed")

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
