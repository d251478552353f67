"""
LLM 客户端模块 (LLM Client Module)
=================================

封装 OpenAI 兼容 API 的异步视觉调用，
包含重试、Token 统计、JSON 解析等能力。
"""

from __future__ import annotations

import base64
import json
import re
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Union

import httpx
from openai import APIConnectionError, AsyncOpenAI, InternalServerError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from labsupply.config import Settings, get_settings
from labsupply.logger import get_logger

logger = get_logger(__name__)


RE_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*\}|\[.*\])\s*```", re.DOTALL)
# A fence that wraps the whole response, nothing before or after it
RE_WHOLE_FENCE = re.compile(r"\A```(?:json)?\s*(.*?)\s*```\Z", re.DOTALL)

# APITimeoutError is a subclass of APIConnectionError
TRANSIENT_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)


@dataclass(frozen=True)
class RetryConfig:
    """
    重试配置数据类，不可变。
    属性: max_attempts, min_wait_seconds, max_wait_seconds, backoff_multiplier
    """
    max_attempts: int
    min_wait_seconds: float
    max_wait_seconds: float
    backoff_multiplier: float


class TokenTracker:
    """
    Token 使用追踪器，累计多次 LLM 请求的 token 消耗。
    """

    def __init__(self) -> None:
        self._usage: Dict[str, int] = {
            "input_tokens": 0,
            "output_tokens": 0,
            "total_tokens": 0,
            "requests_count": 0,
        }

    def update(self, response: Any) -> None:
        """根据响应更新 token 统计。"""
        usage = getattr(response, "usage", None)
        if usage is None:
            return
        input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        total_tokens = int(getattr(usage, "total_tokens", 0) or (input_tokens + output_tokens))
        self._usage["input_tokens"] += input_tokens
        self._usage["output_tokens"] += output_tokens
        self._usage["total_tokens"] += total_tokens
        self._usage["requests_count"] += 1
        logger.debug(
            "Token usage: input=%d, output=%d, total=%d (cumulative=%d)",
            input_tokens,
            output_tokens,
            total_tokens,
            self._usage["total_tokens"],
        )

    def get(self) -> Dict[str, int]:
        """返回当前 token 使用统计的副本。"""
        return dict(self._usage)

    def reset(self) -> None:
        """重置统计。"""
        self._usage = {
            "input_tokens": 0,
            "output_tokens": 0,
            "total_tokens": 0,
            "requests_count": 0,
        }


class JSONParser:
    """
    轻量 JSON 解析器，用于解析模型响应。

    主路径期望严格 JSON（通过 response_format 启用）。
    回退支持 Markdown 代码块和括号平衡切片。
    """

    @staticmethod
    def parse(text: str) -> Union[dict, list]:
        """
        解析文本为 JSON 对象或数组。
        失败时返回包含 error、raw_output、parse_error 的字典。
        """
        raw = (text or "").strip()
        if not raw:
            return {"error": "json_parse_error", "raw_output": "", "parse_error": "empty_output"}

        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass

        block = RE_JSON_BLOCK.search(raw)
        if block:
            try:
                return json.loads(block.group(1))
            except json.JSONDecodeError:
                pass

        sliced = JSONParser._extract_balanced_json(raw)
        if sliced is not None:
            try:
                return json.loads(sliced)
            except json.JSONDecodeError:
                pass

        return {
            "error": "json_parse_error",
            "raw_output": raw[:5000],
            "parse_error": "unable_to_parse_json",
        }

    @staticmethod
    def parse_strict(text: str) -> Union[dict, list]:
        """
        严格解析：整段文本必须是一个 JSON 值，或被单个代码块完整包裹。

        用于 json_schema 响应；不做切片回退，拼接对象或夹带说明文字均视为失败。
        """
        raw = (text or "").strip()
        if not raw:
            return {"error": "json_parse_error", "raw_output": "", "parse_error": "empty_output"}

        fence = RE_WHOLE_FENCE.match(raw)
        candidate = fence.group(1) if fence else raw
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            return {
                "error": "json_parse_error",
                "raw_output": raw[:5000],
                "parse_error": "unable_to_parse_json",
            }

    @staticmethod
    def is_parse_error(result: Any) -> bool:
        """判断 parse() 的返回值是否为解析失败标记。"""
        return isinstance(result, dict) and result.get("error") == "json_parse_error" and "parse_error" in result

    @staticmethod
    def _extract_balanced_json(text: str) -> Optional[str]:
        """从文本中提取括号平衡的 JSON 片段。"""
        start_positions = [idx for idx in (text.find("{"), text.find("[")) if idx != -1]
        if not start_positions:
            return None
        start = min(start_positions)
        opener = text[start]
        closer = "}" if opener == "{" else "]"
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        return None


def _log_retry(retry_state: Any, method: str, model: str, max_attempts: int, filename: Optional[str]) -> None:
    logger.warning(
        "LLM %s retrying (attempt %d/%d) | model=%s | filename=%s | error=%s",
        method,
        retry_state.attempt_number,
        max_attempts,
        model,
        filename,
        str(retry_state.outcome.exception()) if retry_state.outcome else "unknown",
    )


# Module-level singleton instance
_llm_client_instance: Optional["LLMClient"] = None


def get_llm_client() -> "LLMClient":
    """
    获取 LLMClient 单例。

    确保整个应用只创建一个 LLMClient 并复用。
    """
    global _llm_client_instance
    if _llm_client_instance is None:
        logger.debug("Creating new LLMClient singleton instance")
        _llm_client_instance = LLMClient()
    return _llm_client_instance


def reset_llm_client() -> None:
    """
    重置 LLMClient 单例。

    用于测试或配置变更后需要重新创建客户端时。
    """
    global _llm_client_instance
    _llm_client_instance = None
    logger.debug("LLMClient singleton instance reset")


class LLMClient:
    """
    LLM 客户端，封装 OpenAI 兼容 API 的异步视觉调用。

    对连接错误、限流和服务端错误按配置重试；
    其余错误（鉴权、请求格式等）直接抛出。
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        timeout = httpx.Timeout(settings.REQUEST_TIMEOUT, connect=10.0)
        self.client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            timeout=timeout,
            # retries are handled by tenacity below
            max_retries=0,
        )
        self.vision_model = settings.OPENAI_VISION_MODEL
        self.temperature = settings.TEMPERATURE
        self.timeout = settings.REQUEST_TIMEOUT
        self.retry_config = RetryConfig(
            max_attempts=int(getattr(settings, "LLM_RETRY_MAX_ATTEMPTS", 3)),
            min_wait_seconds=float(getattr(settings, "LLM_RETRY_MIN_WAIT_SECONDS", 2.0)),
            max_wait_seconds=float(getattr(settings, "LLM_RETRY_MAX_WAIT_SECONDS", 10.0)),
            backoff_multiplier=float(getattr(settings, "LLM_RETRY_BACKOFF_MULTIPLIER", 1.0)),
        )
        self.token_tracker = TokenTracker()
        logger.info("LLMClient initialized with vision_model=%s", self.vision_model)

    def get_token_usage(self) -> Dict[str, int]:
        return self.token_tracker.get()

    def reset_token_usage(self) -> None:
        self.token_tracker.reset()
        logger.debug("Token usage statistics reset")

    @staticmethod
    def _build_vision_messages(
        prompt: str,
        image_data: bytes,
        media_type: str,
        system: Optional[str],
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})

        encoded = base64.b64encode(image_data).decode("utf-8")
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{encoded}"}},
        ]
        messages.append({"role": "user", "content": content})
        return messages

    def _retrying(self, method: str, filename: Optional[str]) -> AsyncRetrying:
        cfg = self.retry_config
        return AsyncRetrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential(
                multiplier=cfg.backoff_multiplier,
                min=cfg.min_wait_seconds,
                max=cfg.max_wait_seconds,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=partial(
                _log_retry,
                method=method,
                model=self.vision_model,
                max_attempts=cfg.max_attempts,
                filename=filename,
            ),
            reraise=True,
        )

    async def _vision_text_once(
        self,
        messages: List[Dict[str, Any]],
        temperature: float,
        response_format: Dict[str, Any],
    ) -> str:
        response = await self.client.chat.completions.create(
            model=self.vision_model,
            messages=messages,
            temperature=temperature,
            response_format=response_format,
        )
        self.token_tracker.update(response)
        if not response.choices:
            return ""
        message = response.choices[0].message
        refusal = getattr(message, "refusal", None)
        if refusal:
            logger.warning("LLM refused the request: %s", refusal)
        return (message.content or "").strip()

    async def vision_json(
        self,
        prompt: str,
        image_data: bytes,
        media_type: str,
        response_format: Optional[Dict[str, Any]] = None,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        step: Optional[str] = None,
        filename: Optional[str] = None,
        strict: bool = False,
    ) -> Union[dict, list]:
        """
        发送一张内联图片和一条文本指令，返回解析后的 JSON。

        解析失败时返回 JSONParser 的错误标记字典，由调用方判定。
        strict=True 时使用 JSONParser.parse_strict，不做代码块/切片回退。
        """
        messages = self._build_vision_messages(prompt, image_data, media_type, system)
        temp = self.temperature if temperature is None else temperature
        fmt = response_format or {"type": "json_object"}
        logger.info(
            "LLM vision_json start | step=%s | model=%s | timeout=%s | prompt_chars=%d | image_bytes=%d | filename=%s",
            step,
            self.vision_model,
            self.timeout,
            len(prompt),
            len(image_data),
            filename,
        )
        start = time.time()
        attempts = 0
        content = ""
        try:
            async for attempt in self._retrying("vision_json", filename):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    content = await self._vision_text_once(messages, temp, fmt)
        except Exception as exc:
            logger.warning(
                "LLM vision_json failed | step=%s | elapsed_ms=%d | attempts=%d | filename=%s | error=%s",
                step,
                int((time.time() - start) * 1000),
                attempts,
                filename,
                exc,
            )
            raise

        logger.info(
            "LLM vision_json done | step=%s | elapsed_ms=%d | retries=%d | filename=%s",
            step,
            int((time.time() - start) * 1000),
            max(attempts - 1, 0),
            filename,
        )
        if strict:
            return JSONParser.parse_strict(content)
        return JSONParser.parse(content)
