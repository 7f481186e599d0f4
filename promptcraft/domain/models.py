"""统一的 Provider 请求与结果数据模型。

本模块定义了生成层在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 发给模型的一条上下文（system/user/assistant）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult: 从 Provider 解析后的统一响应结果。

所有 Provider 适配器（如 GeminiClient）都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List


# Provider 侧的上下文角色；与会话存储中的 user/assistant/error 不同
ProviderRole = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """发给 Provider 的一条上下文。

    - role: system/user/assistant。system 只会作为第一条出现（persona）。
    - content: 纯文本内容。
    - meta: 附加元数据，不直接发给 Provider，仅用于日志。
    """

    role: ProviderRole
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatRequest:
    """一次完整的生成请求。

    GenerationClient 把 persona、历史与当前输入拼成 ChatRequest，
    Provider 适配层负责把本结构转换成各家 API 的 JSON 请求体。
    """

    provider: str  # 逻辑 Provider 名，如 "gemini"
    model: str  # 逻辑模型名，如 "chat-default"（再由 registry 映射为真实模型名）
    messages: List[ChatMessage]
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次生成调用的最终结果。

    - provider / model: 逻辑名。
    - choices: 候选回答，可能为空（模型未返回内容）。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试。
    """

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


# 生成调用中的历史发言方：user 为人类，model 为助手
Speaker = Literal["user", "model"]


@dataclass
class HistoryEntry:
    """有界历史中的一轮发言。"""

    speaker: Speaker
    text: str
