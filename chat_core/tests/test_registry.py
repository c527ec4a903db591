import asyncio

import pytest

from chat_core.domain.exceptions import ProviderNotAvailableError
from chat_core.domain.models import ProviderConfig, ProviderKind
from chat_core.providers.claude_client import ClaudeProvider
from chat_core.providers.mock_client import MockProvider
from chat_core.providers.ollama_client import OllamaProvider
from chat_core.providers.openai_compat import OpenAICompatibleProvider
from chat_core.providers.registry import AdapterRegistry, create_adapter


def _config(pid="p1", kind=ProviderKind.OPENAI, model="gpt-4o"):
    return ProviderConfig(id=pid, name=pid, kind=kind, api_key="k", default_model=model)


def test_create_adapter_dispatches_on_kind():
    assert isinstance(create_adapter(_config(kind=ProviderKind.OPENAI)), OpenAICompatibleProvider)
    assert isinstance(create_adapter(_config(kind=ProviderKind.CUSTOM)), OpenAICompatibleProvider)
    assert isinstance(create_adapter(_config(kind=ProviderKind.CLAUDE)), ClaudeProvider)
    assert isinstance(create_adapter(_config(kind=ProviderKind.OLLAMA)), OllamaProvider)


def test_get_or_create_caches_by_id_and_invalidate_evicts():
    async def scenario():
        registry = AdapterRegistry()
        first = await registry.get_or_create(_config())
        after_first = await registry.count()
        second = await registry.get_or_create(_config(model="other"))
        after_second = await registry.count()
        removed = await registry.invalidate("p1")
        return first, second, after_first, after_second, removed, await registry.count()

    first, second, after_first, after_second, removed, final = asyncio.run(scenario())
    assert first.provider_id() == second.provider_id() == "p1"
    assert first is second
    assert (after_first, after_second) == (1, 1)
    assert removed is True
    assert final == 0


def test_register_replaces_adapter_and_config_together():
    async def scenario():
        registry = AdapterRegistry()
        old = await registry.get_or_create(_config(model="gpt-4o"))
        new = await registry.register(_config(model="gpt-4o-mini"))
        current = await registry.get("p1")
        return old, new, current, registry.get_default_model("p1"), await registry.count()

    old, new, current, model, count = asyncio.run(scenario())
    assert current is new and new is not old
    assert model == "gpt-4o-mini"
    assert count == 1


def test_default_model_and_missing_provider():
    async def scenario():
        registry = AdapterRegistry()
        await registry.register_adapter(
            MockProvider(),
            ProviderConfig(id="mock", name="Mock", kind=ProviderKind.CUSTOM, default_model="mock-model"),
        )
        await registry.get_or_create(_config(pid="p2", kind=ProviderKind.CLAUDE, model="claude-3-opus-20240229"))
        infos = await registry.list_providers()
        with pytest.raises(ProviderNotAvailableError):
            await registry.require("absent")
        await registry.invalidate_all()
        return registry, infos, await registry.count()

    registry, infos, count = asyncio.run(scenario())
    assert sorted(i.id for i in infos) == ["mock", "p2"]
    assert count == 0
    assert registry.get_default_model("mock") is None
    assert registry.get_default_model("absent") is None


def test_concurrent_first_creation_leaves_single_entry():
    async def scenario():
        registry = AdapterRegistry()
        adapters = await asyncio.gather(*(registry.get_or_create(_config()) for _ in range(10)))
        return adapters, await registry.count(), await registry.get("p1")

    adapters, count, cached = asyncio.run(scenario())
    assert count == 1
    assert {a.provider_id() for a in adapters} == {"p1"}
    assert cached in adapters
