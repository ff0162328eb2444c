"""Tests for auto-tagging insights to concepts."""

import pytest

from insight_engine.core.autotag import AutoTagger, filter_relevant_concepts, format_concept_list, slugs_to_ids
from insight_engine.core.errors import PersistenceError
from tests.fakes.fake_db import FakeChatModel, FakeConceptStore

INSIGHT = {
    "statement": "Creatine supplementation improves muscle strength",
    "context_note": "in older adults",
    "insight_type": "Protocol",
    "qualifiers": {"population": "adults over 65", "dose": "5g daily"},
}


@pytest.fixture
def concept_store():
    store = FakeConceptStore()
    store.add_concept("Creatine", "creatine", id="c-creatine", description="Creatine supplementation")
    store.add_concept("Muscle Health", "muscle-health", id="c-muscle", description="Strength and hypertrophy")
    store.add_concept("Sleep", "sleep", id="c-sleep", description="Sleep quality and duration")
    return store


@pytest.fixture
def llm():
    return FakeChatModel()


@pytest.fixture
def tagger(llm, concept_store):
    return AutoTagger(llm, concept_store)


class TestFilterRelevantConcepts:
    def test_name_match_ranks_first(self, concept_store):
        ranked = filter_relevant_concepts(INSIGHT, concept_store.list_concepts(), top_n=2)

        assert [c["id"] for c in ranked] == ["c-creatine", "c-muscle"]

    def test_qualifiers_count_as_text(self):
        concepts = [
            {"id": "a", "name": "Bone", "slug": "bone"},
            {"id": "b", "name": "Elderly", "slug": "elderly", "description": "adults over"},
        ]

        ranked = filter_relevant_concepts(
            {"statement": "x", "qualifiers": {"population": "adults over 65"}}, concepts, top_n=1
        )

        assert [c["id"] for c in ranked] == ["b"]

    def test_short_words_ignored(self):
        concepts = [{"id": "a", "name": "BP", "slug": "bp"}, {"id": "b", "name": "Iron", "slug": "iron"}]

        ranked = filter_relevant_concepts({"statement": "Iron and BP"}, concepts, top_n=2)

        # "bp" only scores through the direct name bonus
        assert [c["id"] for c in ranked] == ["b", "a"]

    def test_empty_concepts(self):
        assert filter_relevant_concepts(INSIGHT, []) == []

    def test_top_n_limits(self, concept_store):
        assert len(filter_relevant_concepts(INSIGHT, concept_store.list_concepts(), top_n=1)) == 1


class TestHelpers:
    def test_slugs_to_ids_drops_unknown_and_duplicates(self, concept_store):
        concepts = concept_store.list_concepts()
        assert slugs_to_ids(["creatine", "unknown", "creatine", "sleep"], concepts) == ["c-creatine", "c-sleep"]

    def test_format_concept_list(self):
        text = format_concept_list([{"slug": "sleep", "name": "Sleep", "description": "Rest"}, {"slug": "iron", "name": "Iron"}])
        assert text == "sleep: Sleep - Rest\niron: Iron"


class TestAutoTagInsight:
    def test_maps_slugs_to_ids(self, tagger, llm):
        llm.queue({"concept_slugs": ["creatine", "muscle-health", "made-up"]})

        assert tagger.auto_tag_insight(INSIGHT) == ["c-creatine", "c-muscle"]
        user_prompt = llm.calls[0][1].content
        assert "Insight: Creatine supplementation improves muscle strength" in user_prompt
        assert "Context: in older adults" in user_prompt
        assert "Type: Protocol" in user_prompt

    def test_llm_failure_returns_empty(self, tagger, llm):
        llm.queue(RuntimeError("timeout"))
        assert tagger.auto_tag_insight(INSIGHT) == []

    def test_no_concepts_skips_llm(self, llm):
        tagger = AutoTagger(llm, FakeConceptStore())

        assert tagger.auto_tag_insight(INSIGHT) == []
        assert llm.calls == []

    def test_concepts_added_between_calls_are_offered(self, tagger, concept_store, llm):
        llm.queue({"concept_slugs": []}, {"concept_slugs": ["muscle-strength"]})
        tagger.auto_tag_and_link("i1", INSIGHT)
        concept_store.add_concept("Muscle Strength", "muscle-strength", id="c-strength")

        assert tagger.auto_tag_and_link("i1", INSIGHT) == ["c-strength"]
        assert "muscle-strength: Muscle Strength" in llm.calls[1][1].content
        assert ("i1", "c-strength") in concept_store.links


class TestAutoTagBatch:
    def test_results_by_index(self, tagger, llm):
        llm.queue(
            {
                "results": [
                    {"index": 2, "concept_slugs": ["sleep"]},
                    {"index": 1, "concept_slugs": ["creatine"]},
                    {"index": 7, "concept_slugs": ["sleep"]},
                ]
            }
        )
        items = [("i1", INSIGHT), ("i2", {"statement": "Sleep debt impairs glucose tolerance"}), ("i3", {"statement": "x"})]

        results = tagger.auto_tag_batch(items)

        assert results == {"i1": ["c-creatine"], "i2": ["c-sleep"], "i3": []}
        assert len(llm.calls) == 1

    def test_split_into_calls(self, tagger, llm):
        items = [(f"i{n}", {"statement": f"s{n}"}) for n in range(5)]

        results = tagger.auto_tag_batch(items, batch_size=2)

        assert len(llm.calls) == 3
        assert set(results) == {f"i{n}" for n in range(5)}

    def test_failed_call_marks_untagged(self, tagger, llm):
        llm.queue(RuntimeError("bad gateway"), {"results": [{"index": 1, "concept_slugs": ["sleep"]}]})
        items = [("a", {"statement": "s"}), ("b", {"statement": "t"})]

        assert tagger.auto_tag_batch(items, batch_size=1) == {"a": [], "b": ["c-sleep"]}


class TestAutoTagAndLink:
    def test_writes_links(self, tagger, concept_store, llm):
        llm.queue({"concept_slugs": ["creatine"]})

        assert tagger.auto_tag_and_link("i1", INSIGHT) == ["c-creatine"]
        assert ("i1", "c-creatine") in concept_store.links

    def test_existing_link_does_not_block_new_ones(self, tagger, concept_store, llm):
        concept_store.link("i1", "c-creatine")
        llm.queue({"concept_slugs": ["creatine", "sleep"]})

        assert tagger.auto_tag_and_link("i1", INSIGHT) == ["c-creatine", "c-sleep"]
        assert concept_store.links == {("i1", "c-creatine"), ("i1", "c-sleep")}

    def test_link_failure_reports_nothing_linked(self, tagger, concept_store, llm):
        def broken(insight_id, concept_ids):
            raise PersistenceError("foreign key violation", code="23503")

        concept_store.link_insight_to_concepts = broken
        llm.queue({"concept_slugs": ["sleep"]})

        assert tagger.auto_tag_and_link("i1", INSIGHT) == []

    def test_nothing_matched(self, tagger, concept_store, llm):
        llm.queue({"concept_slugs": []})

        assert tagger.auto_tag_and_link("i1", INSIGHT) == []
        assert concept_store.links == set()


class TestAutoTagBatchAndLink:
    def test_links_each_insight(self, tagger, concept_store, llm):
        concept_store.link("i1", "c-creatine")
        llm.queue(
            {
                "results": [
                    {"index": 1, "concept_slugs": ["creatine", "muscle-health"]},
                    {"index": 2, "concept_slugs": []},
                ]
            }
        )

        summary = tagger.auto_tag_batch_and_link([("i1", INSIGHT), ("i2", {"statement": "Unrelated"})])

        assert summary["processed"] == 2
        assert summary["tagged"] == 1
        assert summary["links"] == 2
        assert summary["results"] == {"i1": ["c-creatine", "c-muscle"], "i2": []}
        assert ("i1", "c-muscle") in concept_store.links

    def test_write_failure_counted(self, tagger, concept_store, llm):
        def broken(insight_id, concept_ids):
            raise PersistenceError("connection reset")

        concept_store.link_insight_to_concepts = broken
        llm.queue({"results": [{"index": 1, "concept_slugs": ["sleep"]}]})

        summary = tagger.auto_tag_batch_and_link([("i1", INSIGHT)])

        assert summary["errors"] == 1
        assert summary["tagged"] == 0
        assert summary["results"] == {"i1": []}
