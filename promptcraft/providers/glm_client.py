"""GLM / BigModel Provider 适配器。

OpenAI 兼容的 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段：model/messages/temperature/max_tokens/top_p。
"""

from typing import Any, Dict

import httpx

from promptcraft.config.settings import settings
from promptcraft.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from promptcraft.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatUsage,
)
from promptcraft.providers.registry import GLM_CONFIG, ModelConfig, get_model_config


class GlmClient:
    """GLM / BigModel Provider 客户端实现。"""

    name = "glm"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def chat(self, req: ChatRequest) -> ChatResult:
        if not getattr(self._settings, "glm_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GLM_API_KEY not set")
        model_cfg = get_model_config(GLM_CONFIG, req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "glm_base_url", None) or GLM_CONFIG.base_url
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{base}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._settings.glm_api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="GLM rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json(), req)

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        return {
            "model": model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in req.messages if m.content],
            "temperature": req.temperature or model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "top_p": req.top_p,
            "stream": False,
        }

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            choices.append(
                ChatChoice(
                    index=ch.get("index", i),
                    message=ChatMessage(role="assistant", content=msg.get("content") or ""),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        usage_raw = data.get("usage") or {}
        usage = ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )
        return ChatResult(provider="glm", model=req.model, choices=choices, usage=usage, raw=data)

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}
