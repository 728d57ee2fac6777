"""
Unit tests for the embedder registry.
"""

import pytest

from memory_pipeline.contracts.models import Modality, ProviderType
from memory_pipeline.core.status import StatusCode
from memory_pipeline.registry.embedder_registry import EmbedderRegistry


def register(registry, **overrides):
    kwargs = dict(
        display_name="TEI small",
        provider_type=ProviderType.TEI,
        endpoint_url="http://tei.test:8080",
        model_identifier="bge-small",
        dimensionality=384,
    )
    kwargs.update(overrides)
    return registry.register(**kwargs)


class TestRegister:

    def test_register_defaults(self, registry):
        embedder = register(registry).value

        assert embedder.api_path == "/v1/embeddings"
        assert embedder.supported_modalities == [Modality.TEXT]
        assert embedder.credentials is None

    def test_credentials_are_encrypted(self, registry, store, cipher):
        embedder = register(
            registry,
            provider_type=ProviderType.OPENAI,
            endpoint_url="https://api.openai.test",
            credentials="sk-secret",
        ).value

        stored = store.get_embedder(embedder.embedder_id).value
        assert stored.credentials != "sk-secret"
        assert cipher.decrypt(stored.credentials) == "sk-secret"
        assert "credentials" not in stored.to_dict()

    def test_openai_requires_credentials(self, registry):
        result = register(registry, provider_type=ProviderType.OPENAI)

        assert result.status.code == StatusCode.INVALID_ARGUMENT

    def test_credentials_without_key(self, store):
        result = register(EmbedderRegistry(store), credentials="sk-secret")

        assert result.status.code == StatusCode.INTERNAL

    @pytest.mark.parametrize("overrides", [
        {"display_name": " "},
        {"provider_type": "BEDROCK"},
        {"endpoint_url": ""},
        {"endpoint_url": "ftp://tei.test"},
        {"endpoint_url": "tei.test"},
        {"model_identifier": ""},
        {"dimensionality": 0},
        {"dimensionality": True},
        {"dimensionality": "384"},
        {"max_sequence_length": 0},
        {"labels": {"team": 1}},
        {"supported_modalities": ["SMELL"]},
    ])
    def test_invalid_definitions(self, registry, overrides):
        assert register(registry, **overrides).status.code == StatusCode.INVALID_ARGUMENT

    def test_duplicate_endpoint_and_model(self, registry):
        assert register(registry).is_ok

        assert register(registry, display_name="Again").status.code == StatusCode.ALREADY_EXISTS
        assert register(registry, api_path="/embed").is_ok

    def test_api_path_gets_leading_slash(self, registry):
        embedder = register(registry, api_path="embed").value

        assert embedder.url == "http://tei.test:8080/embed"


class TestLookup:

    def test_lookup_by_id_and_model(self, registry, embedder):
        assert registry.lookup(embedder.embedder_id).value.embedder_id == embedder.embedder_id
        assert registry.lookup("test-embed-small").value.embedder_id == embedder.embedder_id

    def test_unknown(self, registry):
        assert registry.lookup("nope").status.code == StatusCode.NOT_FOUND

    def test_empty_reference(self, registry):
        assert registry.lookup("").status.code == StatusCode.INVALID_ARGUMENT

    def test_ambiguous_model(self, registry):
        register(registry)
        register(registry, endpoint_url="http://tei-2.test:8080")

        result = registry.lookup("bge-small")

        assert result.status.code == StatusCode.INVALID_ARGUMENT
        assert "matches 2 embedders" in result.status.message

    def test_text_support_required(self, registry):
        embedder = register(registry, supported_modalities=[Modality.IMAGE]).value

        result = registry.lookup(embedder.embedder_id)

        assert result.status.code == StatusCode.INVALID_ARGUMENT


class TestList:

    def test_filters(self, registry):
        register(registry, labels={"tier": "gold"}, owner_id="u1")
        register(registry, model_identifier="bge-large", labels={"tier": "silver"})
        register(
            registry,
            provider_type=ProviderType.VLLM,
            endpoint_url="http://vllm.test",
            labels={"tier": "gold"},
        )

        gold = registry.list(label_selectors={"tier": "gold"}).value
        tei_gold = registry.list(provider_type=ProviderType.TEI, label_selectors={"tier": "gold"}).value
        owned = registry.list(owner_id="u1").value

        assert len(gold) == 2
        assert [e.model_identifier for e in tei_gold] == ["bge-small"]
        assert len(owned) == 1

    def test_invalid_selectors(self, registry):
        assert registry.list(label_selectors={"tier": 1}).status.code == StatusCode.INVALID_ARGUMENT
