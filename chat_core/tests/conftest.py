import httpx
import pytest

from chat_core.config.settings import settings


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(settings, "retry_min_seconds", 0.0)
    monkeypatch.setattr(settings, "retry_max_seconds", 0.0)


@pytest.fixture
def streamed():
    """构造分块到达的流式响应。"""

    def make(parts, status_code=200, headers=None):
        async def body():
            for part in parts:
                yield part

        return httpx.Response(status_code, headers=headers, content=body())

    return make
