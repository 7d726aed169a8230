"""
Error classification for provider failures.

``classify_error`` turns whatever a transport produced (an exception, an HTTP
status, an httpx response, or a decoded provider payload) into a single
ErrorKind plus a user-facing detail string. Details are bilingual and name the
model and provider involved.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx
from google.genai import errors as genai_errors

from core.exceptions import ErrorKind, OrchestrationError, error_for_kind

from .base import extract_error_message, is_safety_error

logger = logging.getLogger(__name__)


@dataclass
class ClassifiedError:
    """Result of classifying a failure."""

    kind: ErrorKind
    detail: str
    provider: str | None = None
    model: str | None = None

    def to_exception(self) -> OrchestrationError:
        return error_for_kind(self.kind, self.detail, provider=self.provider, model=self.model)


NETWORK_KEYWORDS = [
    "failed to fetch",
    "connection refused",
    "connection reset",
    "server disconnected",
    "name or service not known",
    "network is unreachable",
    "timed out",
]

AUTH_KEYWORDS = [
    "unauthorized",
    "invalid api key",
    "api key not valid",
    "invalid_api_key",
    "permission denied",
    "missing key inputs",
]

NOT_FOUND_KEYWORDS = ["not found", "does not exist", "model_not_found"]

# Status codes quoted inside a message, not part of a longer number
AUTH_STATUS_PATTERN = re.compile(r"(?<!\d)(401|403)(?!\d)")
NOT_FOUND_STATUS_PATTERN = re.compile(r"(?<!\d)404(?!\d)")


def _network_detail(provider: str, model: str) -> str:
    return (
        f"网络连接失败 (Failed to fetch): 无法访问 AI 服务接口。\n"
        f"检测模型: [{model}]\n检测供应商: [{provider}]\n"
        "建议: 1. 检查 API 密钥或代理 Base URL; 2. 检查该模型是否需要开启 VPN; "
        "3. 检查代理软件是否运行正常。(Network unreachable: check proxy, VPN or base URL)"
    )


def _auth_detail(provider: str, model: str) -> str:
    return (
        f"认证失败 (401): API Key 无效或过期。请检查供应商 [{provider}] 的 API Key 配置是否正确。"
        f" (Invalid or expired API key for provider [{provider}], model [{model}])"
    )


def _not_found_detail(provider: str, model: str) -> str:
    return (
        f"模型未找到 (404): 您当前选用的模型 [{model}] 在供应商 [{provider}] 中不存在。"
        f"请检查模型名称是否正确，或者该模型是否已被下线。"
        f" (Model [{model}] not found at provider [{provider}])"
    )


def _policy_detail(message: str) -> str:
    return (
        "提示词触发安全策略 (Safety Policy Conflict): 系统认为您的描述可能包含敏感或违规内容，已拒绝生成。"
        f"建议修改关键词。详情: {message}"
    )


def _payload_message(payload: Any) -> str:
    message = extract_error_message(payload, "")
    if message:
        return message
    try:
        return json.dumps(payload, ensure_ascii=False)[:200]
    except (TypeError, ValueError):
        return str(payload)[:200]


def _classify_status(status: int, message: str, provider: str, model: str) -> ClassifiedError:
    if status == 404:
        return ClassifiedError(ErrorKind.MODEL_NOT_FOUND, _not_found_detail(provider, model))
    if status in (401, 403):
        return ClassifiedError(ErrorKind.AUTH_INVALID, _auth_detail(provider, model))
    if is_safety_error(message):
        return ClassifiedError(ErrorKind.CONTENT_POLICY_REJECTED, _policy_detail(message))
    return ClassifiedError(
        ErrorKind.UNKNOWN,
        f"AI Provider Error ({provider}): {status} - {message}",
    )


def _classify_message(message: str, provider: str, model: str) -> ClassifiedError:
    lower = message.lower()

    if any(k in lower for k in NETWORK_KEYWORDS):
        return ClassifiedError(ErrorKind.NETWORK_UNREACHABLE, _network_detail(provider, model))
    if "json_parse_failure" in lower:
        return ClassifiedError(ErrorKind.PARSE_FAILURE, message)
    if AUTH_STATUS_PATTERN.search(lower) or any(k in lower for k in AUTH_KEYWORDS):
        return ClassifiedError(ErrorKind.AUTH_INVALID, _auth_detail(provider, model))
    if NOT_FOUND_STATUS_PATTERN.search(lower) or any(k in lower for k in NOT_FOUND_KEYWORDS):
        return ClassifiedError(ErrorKind.MODEL_NOT_FOUND, _not_found_detail(provider, model))
    if is_safety_error(message):
        return ClassifiedError(ErrorKind.CONTENT_POLICY_REJECTED, _policy_detail(message))
    if "unsupported provider" in lower:
        return ClassifiedError(ErrorKind.PROVIDER_UNSUPPORTED, message)

    return ClassifiedError(ErrorKind.UNKNOWN, message[:500] or "未知错误 (Unknown error)")


def _classify_sdk_error(error: genai_errors.APIError, provider: str, model: str) -> ClassifiedError:
    message = error.message or str(error)
    if error.code in (401, 403, 404):
        return _classify_status(error.code, message, provider, model)
    # Google reports bad keys as 400 INVALID_ARGUMENT
    return _classify_message(message, provider, model)


def classify_error(
    source: Any,
    provider: str | None = None,
    model: str | None = None,
) -> ClassifiedError:
    """
    Classify a failure into an ErrorKind with a detail message.

    Args:
        source: Exception, HTTP status code, httpx.Response or decoded payload
        provider: Provider name for the detail text
        model: Model id for the detail text

    Returns:
        ClassifiedError carrying exactly one kind
    """
    provider_name = str(provider) if provider else "unknown"
    model_name = model or "unknown"

    if isinstance(source, OrchestrationError):
        result = ClassifiedError(source.kind, source.message)
    elif isinstance(source, genai_errors.APIError):
        result = _classify_sdk_error(source, provider_name, model_name)
    elif isinstance(source, httpx.HTTPStatusError):
        response = source.response
        result = _classify_status(
            response.status_code, _response_message(response), provider_name, model_name
        )
    elif isinstance(source, (httpx.TransportError, ConnectionError, TimeoutError)):
        result = ClassifiedError(ErrorKind.NETWORK_UNREACHABLE, _network_detail(provider_name, model_name))
    elif isinstance(source, json.JSONDecodeError):
        result = ClassifiedError(ErrorKind.PARSE_FAILURE, f"JSON_PARSE_FAILURE: {source.doc[:100]}...")
    elif isinstance(source, httpx.Response):
        result = _classify_status(
            source.status_code, _response_message(source), provider_name, model_name
        )
    elif isinstance(source, bool):
        result = ClassifiedError(ErrorKind.UNKNOWN, str(source))
    elif isinstance(source, int):
        result = _classify_status(source, f"HTTP {source}", provider_name, model_name)
    elif isinstance(source, dict):
        result = _classify_message(_payload_message(source), provider_name, model_name)
    elif isinstance(source, BaseException):
        result = _classify_message(str(source) or type(source).__name__, provider_name, model_name)
    else:
        result = _classify_message(str(source), provider_name, model_name)

    result.provider = provider
    result.model = model
    return result


def _response_message(response: httpx.Response) -> str:
    try:
        return _payload_message(response.json())
    except ValueError:
        return response.text or f"HTTP {response.status_code}"


def to_orchestration_error(
    source: Any,
    provider: str | None = None,
    model: str | None = None,
) -> OrchestrationError:
    """Classify ``source`` and build the matching exception."""
    if isinstance(source, OrchestrationError):
        return source
    classified = classify_error(source, provider=provider, model=model)
    logger.debug(f"[ErrorClassifier] {type(source).__name__} -> {classified.kind}")
    return classified.to_exception()
