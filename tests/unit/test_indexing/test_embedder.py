"""
Unit tests for ItemEmbedder.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from knowledge_search.indexing.embedder import EmbedStatus, ItemEmbedder
from knowledge_search.search.exceptions import (
    ErrorKind,
    ProviderUnavailable,
    VectorIndexUnavailable,
)
from knowledge_search.search.models import FieldKind
from tests.fakes import make_item


class TestEmbedItems:
    @pytest.mark.asyncio
    async def test_embeds_title_and_body(self, embedder, repository, vector_store, embedding_client) -> None:
        item = make_item("doc-1", "Retry policy", "Back off exponentially on 429")
        repository.save_item(item)

        outcomes = await embedder.embed_items([item])

        assert [o.status for o in outcomes] == [EmbedStatus.EMBEDDED]
        assert embedding_client.calls == [["Retry policy", "Back off exponentially on 429"]]
        assert vector_store.has_embedding("doc-1", FieldKind.TITLE, "fake-model")
        assert vector_store.has_embedding("doc-1", FieldKind.BODY, "fake-model")
        assert repository.embedding_status("doc-1", "fake-model") == {
            FieldKind.TITLE: False,
            FieldKind.BODY: False,
        }

    @pytest.mark.asyncio
    async def test_only_non_empty_fields_are_embedded(self, embedder, repository, vector_store) -> None:
        item = make_item("doc-1", "Title only", "   ")
        repository.save_item(item)

        await embedder.embed_items([item])

        assert vector_store.has_embedding("doc-1", FieldKind.TITLE, "fake-model")
        assert not vector_store.has_embedding("doc-1", FieldKind.BODY, "fake-model")
        assert list(repository.embedding_status("doc-1", "fake-model")) == [FieldKind.TITLE]

    @pytest.mark.asyncio
    async def test_empty_item_is_skipped_without_a_call(self, embedder, repository, embedding_client) -> None:
        item = make_item("doc-1", "", "  \n ")
        repository.save_item(item)

        outcomes = await embedder.embed_items([item])

        assert outcomes[0].status is EmbedStatus.SKIPPED
        assert embedding_client.call_count == 0

    @pytest.mark.asyncio
    async def test_batch_uses_one_call_and_keeps_order(self, embedder, repository, embedding_client) -> None:
        items = [make_item(f"doc-{i}", f"Title {i}", f"Body {i}") for i in range(3)]
        for item in items:
            repository.save_item(item)

        outcomes = await embedder.embed_items(items)

        assert [o.item_id for o in outcomes] == ["doc-0", "doc-1", "doc-2"]
        assert all(o.status is EmbedStatus.EMBEDDED for o in outcomes)
        assert embedding_client.call_count == 1
        assert len(embedding_client.calls[0]) == 6

    @pytest.mark.asyncio
    async def test_invalid_input_is_isolated_to_one_item(self, embedder, repository, embedding_client) -> None:
        good = make_item("good", "Fine title", "Fine body")
        bad = make_item("bad", "Poison", "Also fine")
        repository.save_item(good)
        repository.save_item(bad)
        embedding_client.reject("Poison")

        outcomes = await embedder.embed_items([good, bad])

        by_id = {o.item_id: o for o in outcomes}
        assert by_id["good"].status is EmbedStatus.EMBEDDED
        assert by_id["bad"].status is EmbedStatus.FAILED
        assert by_id["bad"].error.kind is ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_provider_failure_fails_whole_batch(self, embedder, repository, embedding_client) -> None:
        items = [make_item("a", "A"), make_item("b", "B")]
        for item in items:
            repository.save_item(item)
        embedding_client.fail_with(ProviderUnavailable("down"))

        outcomes = await embedder.embed_items(items)

        assert [o.status for o in outcomes] == [EmbedStatus.FAILED, EmbedStatus.FAILED]
        assert repository.count_items_missing_embedding("fake-model") == 2

    @pytest.mark.asyncio
    async def test_upsert_failure_records_nothing(self, embedding_client, repository) -> None:
        store = AsyncMock()
        store.upsert.side_effect = VectorIndexUnavailable("qdrant down")
        embedder = ItemEmbedder(embedding_client, store, repository)
        item = make_item("doc-1", "Title", "Body")
        repository.save_item(item)

        outcomes = await embedder.embed_items([item])

        assert outcomes[0].status is EmbedStatus.FAILED
        assert outcomes[0].error.retryable is True
        assert repository.embedding_status("doc-1", "fake-model") == {}

    @pytest.mark.asyncio
    async def test_item_edited_during_embedding_is_not_recorded(self, embedder, repository) -> None:
        original = make_item("doc-1", "Old title", "Old body")
        repository.save_item(original)
        repository.save_item(make_item("doc-1", "New title", "New body", minutes=1))

        outcomes = await embedder.embed_items([original])

        assert outcomes[0].status is EmbedStatus.SKIPPED
        assert repository.count_items_missing_embedding("fake-model") == 1

    @pytest.mark.asyncio
    async def test_item_deleted_during_embedding_leaves_no_vectors(
        self, embedder, repository, vector_store
    ) -> None:
        item = make_item("doc-1", "Title", "Body")
        repository.save_item(item)
        repository.delete_item("doc-1")

        outcomes = await embedder.embed_items([item])

        assert outcomes[0].status is EmbedStatus.SKIPPED
        assert len(vector_store) == 0

    @pytest.mark.asyncio
    async def test_edited_item_keeps_vectors_until_re_embedded(
        self, embedder, repository, vector_store
    ) -> None:
        original = make_item("doc-1", "Old title", "Old body")
        repository.save_item(original)
        repository.save_item(make_item("doc-1", "New title", "New body", minutes=1))

        await embedder.embed_items([original])

        assert vector_store.has_embedding("doc-1", FieldKind.TITLE, "fake-model")

    @pytest.mark.asyncio
    async def test_vectors_carry_item_tags(self, embedder, repository, vector_store, embedding_client) -> None:
        item = make_item("doc-1", "Tagged", tags=["auth"])
        repository.save_item(item)
        await embedder.embed_items([item])
        vector = await embedding_client.embed_one("Tagged")

        tagged = await vector_store.query(
            vector, "project-1", 5, 0.0, model="fake-model", tags=frozenset({"auth"})
        )
        untagged = await vector_store.query(
            vector, "project-1", 5, 0.0, model="fake-model", tags=frozenset({"ui"})
        )

        assert [m.item_id for m in tagged] == ["doc-1"]
        assert untagged == []

    def test_model_comes_from_client(self, embedder) -> None:
        assert embedder.model == "fake-model"
