"""Gemini Provider 适配器。

使用 REST generateContent 端点：
- URL: {base_url}/models/{model}:generateContent
- 认证: x-goog-api-key: <api_key>

Gemini 的 contents 只有 user/model 两种角色，system persona
按原应用的做法作为第一条 model 发言放在最前面。
"""

from typing import Any, Dict, List

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
from promptcraft.providers.registry import GEMINI_CONFIG, ModelConfig, get_model_config


class GeminiClient:
    """Gemini Provider 客户端实现。"""

    name = "gemini"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def chat(self, req: ChatRequest) -> ChatResult:
        api_key = getattr(self._settings, "gemini_api_key", None)
        if not (api_key or "").strip():
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")
        model_cfg = get_model_config(GEMINI_CONFIG, req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{base}/models/{model_cfg.provider_model}:generateContent",
                    json=payload,
                    headers={
                        "x-goog-api-key": api_key,
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Gemini quota exceeded", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=self._error_text(resp), http_status=resp.status_code)
        return self._parse_response(resp.json(), req)

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        contents = [self._message_to_content(m) for m in req.messages if m.content]
        return {
            "contents": contents,
            "generationConfig": {
                "temperature": req.temperature or model_cfg.default_temperature,
                "topP": req.top_p,
                "maxOutputTokens": req.max_tokens or model_cfg.max_tokens,
            },
        }

    @staticmethod
    def _message_to_content(message: ChatMessage) -> Dict[str, Any]:
        role = "user" if message.role == "user" else "model"
        return {"role": role, "parts": [{"text": message.content}]}

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: List[ChatChoice] = []
        for i, cand in enumerate(data.get("candidates") or []):
            parts = (cand.get("content") or {}).get("parts") or []
            text = "".join(p.get("text") or "" for p in parts if isinstance(p, dict))
            choices.append(
                ChatChoice(
                    index=cand.get("index", i),
                    message=ChatMessage(role="assistant", content=text),
                    finish_reason=cand.get("finishReason"),
                )
            )
        usage_raw = data.get("usageMetadata") or {}
        usage = ChatUsage(
            prompt_tokens=usage_raw.get("promptTokenCount", 0),
            completion_tokens=usage_raw.get("candidatesTokenCount", 0),
            total_tokens=usage_raw.get("totalTokenCount", 0),
        )
        return ChatResult(provider="gemini", model=req.model, choices=choices, usage=usage, raw=data)

    @staticmethod
    def _error_text(resp) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        return resp.text
