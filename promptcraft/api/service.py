"""对外 API 服务模块。

提供简化的函数接口供 UI 层调用，内部持有一个默认的会话控制器。
"""

from typing import Any, Dict, List, Optional

from promptcraft.agents.chat_session import ChatSessionController
from promptcraft.agents.generation import GenerationClient
from promptcraft.config.settings import settings
from promptcraft.domain.conversation import format_ts
from promptcraft.domain.exceptions import BusinessError
from promptcraft.infrastructure.logging.logger import logger
from promptcraft.infrastructure.storage.json_store import JsonConversationStore
from promptcraft.providers import create_provider


_store: Optional[JsonConversationStore] = None
_session: Optional[ChatSessionController] = None


def get_default_store() -> JsonConversationStore:
    global _store
    if _store is None:
        _store = JsonConversationStore(root=settings.storage_root)
    return _store


def get_default_session() -> ChatSessionController:
    """获取默认的会话控制器实例（单例）。"""
    global _session
    if _session is None:
        generator = GenerationClient(create_provider(), model=settings.default_model)
        _session = ChatSessionController(generator=generator, store=get_default_store())
    return _session


async def reset_default_session() -> None:
    """关闭并丢弃默认控制器，下次调用时重新创建。"""
    global _session, _store
    if _session is not None:
        await _session.close()
    _session = None
    _store = None


async def submit_message(text: str) -> Dict[str, Any]:
    """提交一条用户输入。

    Returns:
        包含提交状态、错误分类、会话ID和回复消息的字典
    """
    session = get_default_session()
    try:
        outcome = await session.submit(text)
    except Exception as e:
        logger.error(f"Submit failed: {e}", extra={"extra": {
            "conversation_id": session.state.active_conversation_id,
            "error": str(e),
        }})
        raise
    return {
        "status": outcome.status,
        "error_kind": outcome.error_kind.value if outcome.error_kind else None,
        "cause": outcome.cause.value if outcome.cause else None,
        "conversation_id": session.state.active_conversation_id,
        "user_message_id": outcome.user_message_id,
        "reply": outcome.reply.to_dict() if outcome.reply else None,
    }


async def select_conversation(conversation_id: str) -> None:
    await get_default_session().select_conversation(conversation_id)


async def start_new_conversation() -> None:
    await get_default_session().start_new_conversation()


async def delete_conversation(conversation_id: str) -> bool:
    return await get_default_session().delete_conversation(conversation_id)


async def sign_in(owner_id: str) -> None:
    await get_default_session().bind_owner(owner_id)


async def sign_out() -> None:
    await get_default_session().unbind_owner()


def session_state() -> Dict[str, Any]:
    """当前展示状态，供 UI 渲染。"""
    state = get_default_session().state
    return {
        "owner_id": state.owner_id,
        "active_conversation_id": state.active_conversation_id,
        "phase": state.phase.value,
        "input_disabled": state.busy,
        "streaming": state.streaming_buffer,
        "last_error": state.last_error.value if state.last_error else None,
        "messages": [m.to_dict() for m in state.messages],
        "conversations": [
            {"id": c.id, "title": c.title, "updated_at": format_ts(c.updated_at)}
            for c in state.conversations
        ],
    }


async def list_conversations(owner_id: str) -> List[Dict[str, Any]]:
    """列出用户的所有会话（按最近更新排序）。

    Returns:
        会话列表，每项包含 id, title, updated_at
    """
    try:
        items = await get_default_store().list_conversations(owner_id)
    except BusinessError as e:
        logger.error(f"List conversations failed: {e.message}", extra={"extra": {"owner_id": owner_id}})
        raise
    return [{"id": c.id, "title": c.title, "updated_at": format_ts(c.updated_at)} for c in items]


async def get_conversation_messages(owner_id: str, conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息。

    Args:
        owner_id: 用户ID
        conversation_id: 会话ID

    Returns:
        消息列表
    """
    msgs = await get_default_store().list_messages(owner_id, conversation_id)
    return [m.to_dict() for m in msgs]
