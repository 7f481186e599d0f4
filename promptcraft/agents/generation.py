"""生成调用封装。

GenerationClient 是无状态的：每次调用由会话控制器提供完整的有界历史，
不做重试，也不缓存历史。Provider 抛出的业务异常在这里被归类为
GenerationCause，并以 GenerateResponse 的形式返回，不向上抛出。
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from promptcraft.config.settings import settings
from promptcraft.domain.exceptions import (
    CAUSE_SUMMARIES,
    ERROR_SUMMARIES,
    ApiError,
    BusinessError,
    ErrorKind,
    GenerationCause,
    RateLimitError,
    ValidationError,
)
from promptcraft.domain.models import ChatMessage, ChatRequest, HistoryEntry
from promptcraft.infrastructure.logging.logger import logger
from promptcraft.providers.base import ProviderClient


@dataclass
class GenerateResponse:
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    cause: Optional[GenerationCause] = None

    @classmethod
    def ok(cls, text: str) -> "GenerateResponse":
        return cls(success=True, data=text)

    @classmethod
    def failed(cls, cause: GenerationCause, error: Optional[str] = None) -> "GenerateResponse":
        return cls(
            success=False,
            error=error or CAUSE_SUMMARIES[cause],
            kind=ErrorKind.GENERATION_FAILED,
            cause=cause,
        )

    @classmethod
    def empty(cls) -> "GenerateResponse":
        return cls(
            success=False,
            error=ERROR_SUMMARIES[ErrorKind.EMPTY_GENERATION],
            kind=ErrorKind.EMPTY_GENERATION,
        )


def classify_failure(exc: BaseException) -> GenerationCause:
    """根据异常类型、HTTP 状态码与错误文本判断失败原因。"""

    if isinstance(exc, ValidationError) and exc.code == "MISSING_API_KEY":
        return GenerationCause.AUTH_CONFIG
    if isinstance(exc, RateLimitError):
        return GenerationCause.RATE_LIMITED
    if isinstance(exc, ApiError):
        if exc.http_status in (401, 403):
            return GenerationCause.AUTH_CONFIG
        if exc.http_status == 429:
            return GenerationCause.RATE_LIMITED
        if exc.http_status in (404, 500, 502, 503, 504):
            return GenerationCause.MODEL_UNAVAILABLE
    text = str(exc).lower()
    if "api key" in text or "api_key" in text:
        return GenerationCause.AUTH_CONFIG
    if "quota" in text or "rate limit" in text:
        return GenerationCause.RATE_LIMITED
    if "model" in text:
        return GenerationCause.MODEL_UNAVAILABLE
    return GenerationCause.UNKNOWN


class GenerationClient:
    def __init__(
        self,
        provider_client: ProviderClient,
        model: Optional[str] = None,
        temperature: float = 0.7,
    ):
        self._provider_client = provider_client
        self._model = model or getattr(settings, "default_model", "chat-default")
        self._temperature = temperature

    @property
    def provider_name(self) -> str:
        return getattr(self._provider_client, "name", "unknown")

    def generate(
        self,
        current_turn_text: str,
        prior_history: Sequence[HistoryEntry],
        system_persona: str,
    ) -> GenerateResponse:
        """执行一次生成调用。

        Args:
            current_turn_text: 本轮用户输入，不应出现在 prior_history 中。
            prior_history: 之前的有界历史（user / model 发言）。
            system_persona: 固定 persona，作为第一条上下文。

        Returns:
            GenerateResponse；失败时 kind/cause 给出分类。
        """
        turn = (current_turn_text or "").strip()
        if not turn:
            return GenerateResponse.failed(GenerationCause.UNKNOWN, "User input cannot be empty.")

        req = ChatRequest(
            provider=self.provider_name,
            model=self._model,
            messages=self._build_messages(turn, prior_history, system_persona),
            temperature=self._temperature,
        )
        try:
            result = self._provider_client.chat(req)
        except BusinessError as e:
            cause = classify_failure(e)
            logger.error(
                f"Generation failed: {e.message}",
                extra={"extra": {"provider": self.provider_name, "code": e.code, "cause": cause.value}},
            )
            return GenerateResponse.failed(cause)
        except Exception as e:
            cause = classify_failure(e)
            logger.exception(
                "Unexpected generation error",
                extra={"extra": {"provider": self.provider_name, "cause": cause.value}},
            )
            return GenerateResponse.failed(cause)

        text = result.text
        if not text.strip():
            logger.warning("Empty generation", extra={"extra": {"provider": self.provider_name}})
            return GenerateResponse.empty()
        return GenerateResponse.ok(text)

    def _build_messages(
        self,
        turn: str,
        prior_history: Sequence[HistoryEntry],
        system_persona: str,
    ) -> List[ChatMessage]:
        messages = [ChatMessage(role="system", content=system_persona)]
        valid = [h for h in prior_history if h.speaker in ("user", "model") and (h.text or "").strip()]
        if len(valid) != len(prior_history):
            logger.warning(
                "Some history items were invalid and were filtered out",
                extra={"extra": {"dropped": len(prior_history) - len(valid)}},
            )
        for h in valid:
            messages.append(ChatMessage(role="user" if h.speaker == "user" else "assistant", content=h.text))
        messages.append(ChatMessage(role="user", content=turn))
        return messages
