"""PromptCraft 顶层包。

该包提供分级提示词助手的对话核心实现，
包括配置加载、领域模型、Provider 适配、生成调用、
会话控制器、模拟流式输出与会话持久化存储等能力。
"""

from promptcraft.agents.chat_session import ChatSessionController
from promptcraft.agents.generation import GenerationClient

__all__ = ["ChatSessionController", "GenerationClient"]
