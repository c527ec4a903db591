"""适配器共用的 HTTP 辅助函数。

- new_client: 构造 httpx.AsyncClient（可注入 transport 便于测试）。
- raise_for_status: 把 HTTP 错误状态码归类为统一异常。
- open_stream: 发起流式 POST，网络错误统一包装为 NetworkError。
- with_retries: 按 max_retries 对非流式调用做指数退避重试。
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, AuthenticationError, NetworkError, RateLimitError

T = TypeVar("T")

DEFAULT_RETRY_AFTER = 60


def new_client(timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, trust_env=False, transport=transport)


def _retry_after(resp: httpx.Response) -> int:
    raw = resp.headers.get("retry-after", "")
    try:
        return max(0, int(raw))
    except ValueError:
        return DEFAULT_RETRY_AFTER


def check_status(resp: httpx.Response, body: str) -> None:
    if resp.status_code == 429:
        # 限流错误交给上层做重试/退避
        raise RateLimitError(retry_after_seconds=_retry_after(resp))
    if resp.status_code == 401:
        raise AuthenticationError(body or "Authentication failed")
    if resp.status_code >= 400:
        raise ApiError(code=str(resp.status_code), message=body, http_status=resp.status_code)


async def raise_for_status(resp: httpx.Response) -> None:
    """非 2xx 时抛出对应异常；流式响应会先读完错误体。"""
    if resp.status_code < 400:
        return
    await resp.aread()
    check_status(resp, resp.text)


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> Dict[str, Any]:
    try:
        resp = await client.post(url, json=payload, headers=headers)
    except httpx.RequestError as e:
        # 网络错误：DNS 失败、连接超时等
        raise NetworkError(str(e)) from e
    check_status(resp, resp.text)
    try:
        return resp.json()
    except ValueError as e:
        raise ApiError(code=str(resp.status_code), message=f"Invalid JSON response: {e}") from e


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> AsyncIterator[httpx.Response]:
    try:
        async with client.stream("POST", url, json=payload, headers=headers) as resp:
            await raise_for_status(resp)
            yield resp
    except httpx.RequestError as e:
        # 连接失败或读流中断，都作为一次终止性的网络错误
        raise NetworkError(str(e)) from e


def _backoff() -> Callable[[RetryCallState], float]:
    """指数退避；限流错误至少等待 retry-after 秒，整体不超过 retry_max_seconds。"""
    exponential = wait_exponential(multiplier=settings.retry_min_seconds, max=settings.retry_max_seconds)

    def wait(state: RetryCallState) -> float:
        delay = exponential(state)
        error = state.outcome.exception() if state.outcome else None
        if isinstance(error, RateLimitError):
            delay = max(delay, float(error.retry_after_seconds))
        return min(delay, settings.retry_max_seconds)

    return wait


async def with_retries(max_retries: int, call: Callable[[], Awaitable[T]]) -> T:
    """执行 call，遇到 NetworkError / RateLimitError 时退避重试。

    max_retries 为首次失败后的重试次数，总尝试次数为 max_retries + 1；<= 0 时不重试。
    """
    async for attempt in AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(0, max_retries) + 1),
        wait=_backoff(),
        retry=retry_if_exception_type((NetworkError, RateLimitError)),
    ):
        with attempt:
            return await call()
    raise AssertionError("unreachable")
