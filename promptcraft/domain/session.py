"""会话控制器的本地状态（不持久化）。"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, Optional

from .conversation import ConversationSummary, Message
from .exceptions import ErrorKind, GenerationCause


class SubmissionPhase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_GENERATION = "awaiting_generation"
    DELIVERING = "delivering"
    SETTLED = "settled"
    FAILED = "failed"


BUSY_PHASES = frozenset(
    {
        SubmissionPhase.SUBMITTING,
        SubmissionPhase.AWAITING_GENERATION,
        SubmissionPhase.DELIVERING,
    }
)


@dataclass
class SessionState:
    """控制器持有的可展示状态。

    - owner_id: 已绑定的用户；为 None 时处于匿名/本地模式。
    - active_conversation_id: 当前会话的弱引用，仅用于查找。
    - pending_user_message_id: 生成调用进行中时指向本轮用户消息。
    - streaming_buffer: 模拟流式输出的临时文本，不落盘。
    - messages: 当前展示的消息（远端快照 + 本地乐观消息）。
    - conversations: 会话列表订阅的最新快照。
    """

    owner_id: Optional[str] = None
    active_conversation_id: Optional[str] = None
    pending_user_message_id: Optional[str] = None
    streaming_buffer: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    conversations: List[ConversationSummary] = field(default_factory=list)
    phase: SubmissionPhase = SubmissionPhase.IDLE
    last_error: Optional[ErrorKind] = None

    @property
    def busy(self) -> bool:
        """为 True 时输入框应被禁用。"""

        return self.phase in BUSY_PHASES


OutcomeStatus = Literal["settled", "failed", "ignored", "abandoned"]


@dataclass
class SubmitOutcome:
    """submit() 的返回结果。

    status:
        - "settled": 回答已完整展示。
        - "failed": 进入 Failed，error_kind 给出原因。
        - "ignored": 空输入或忙碌时的重复提交，无任何副作用。
        - "abandoned": 用户切换了会话，本轮结果被丢弃。
    """

    status: OutcomeStatus
    error_kind: Optional[ErrorKind] = None
    cause: Optional[GenerationCause] = None
    user_message_id: Optional[str] = None
    reply: Optional[Message] = None
