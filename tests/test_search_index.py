"""Tests for the tiered fuzzy search index."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from convolog.models import CLI_LOG, WEB_EXPORT, Conversation
from convolog.search.index import SearchIndex, extract_snippet, tokenize_query
from convolog.storage.store import ConversationStore

BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def make_conversation(conversation_id: str, offset_minutes: int = 0, **fields) -> Conversation:
    timestamp = BASE_TIME + timedelta(minutes=offset_minutes)
    values = dict(
        id=conversation_id,
        source=WEB_EXPORT,
        name=f"Conversation {conversation_id}",
        created_at=timestamp,
        updated_at=timestamp,
        imported_at=BASE_TIME,
        full_text="",
    )
    values.update(fields)
    return Conversation(**values)


@pytest.fixture
def store(tmp_path: Path) -> ConversationStore:
    """Provide a ConversationStore with a temporary database."""
    store = ConversationStore(tmp_path / "conversations.db")
    yield store
    store.close()


@pytest.fixture
def index(store: ConversationStore) -> SearchIndex:
    """Provide a search index attached to the store."""
    index = SearchIndex(store)
    index.attach()
    return index


class TestHelpers:
    """Tests for query tokenizing and snippets."""

    def test_tokenize_query(self) -> None:
        """Tokens should be lowercased words of two or more characters."""
        assert tokenize_query("Python a, DECORATORS!") == ["python", "decorators"]

    def test_snippet_with_context(self) -> None:
        """Snippets should be cut around the first match with ellipses."""
        text = "a" * 100 + "MATCH" + "b" * 100

        snippet = extract_snippet(text, [(100, 104)], context_length=10)

        assert snippet == "..." + "a" * 10 + "MATCH" + "b" * 10 + "..."

    def test_snippet_at_start(self) -> None:
        """No leading ellipsis when the snippet starts at the beginning."""
        assert extract_snippet("MATCH and more", [(0, 4)], context_length=3) == "MATCH an..."

    def test_snippet_without_match(self) -> None:
        """Without indices the first 150 characters should be used."""
        text = "x" * 200
        assert extract_snippet(text, []) == "x" * 150 + "..."
        assert extract_snippet("short", []) == "short"


class TestTiers:
    """Tests for free and pro coverage."""

    def test_free_tier_covers_most_recent(self, store: ConversationStore, index: SearchIndex) -> None:
        """With 150 conversations, free should cover 100 and pro all 150."""
        store.insert_conversations([make_conversation(f"c{i}", offset_minutes=i) for i in range(150)])

        free = index.search("Conversation", tier="free")
        pro = index.search("Conversation", tier="pro")

        assert len(free) == 100
        assert len(pro) == 150
        assert index.total_count == 150
        assert index.indexed_count("free") == 100
        assert index.indexed_count("pro") == 150
        assert {r.conversation.id for r in free} == {f"c{i}" for i in range(50, 150)}

    def test_old_conversation_only_on_pro(self, store: ConversationStore, index: SearchIndex) -> None:
        """A conversation outside the free window should only be found on pro."""
        store.insert_conversations(
            [make_conversation("old", offset_minutes=-1, name="Ancient sourdough notes")]
            + [make_conversation(f"c{i}", offset_minutes=i) for i in range(3)]
        )
        small = SearchIndex(store, free_tier_limit=3)

        assert small.search("sourdough") == []
        assert [r.conversation.id for r in small.search("sourdough", tier="pro")] == ["old"]

    def test_unknown_tier(self, index: SearchIndex) -> None:
        """Unknown tiers should be rejected."""
        with pytest.raises(ValueError):
            index.search("anything", tier="enterprise")


class TestSearch:
    """Tests for matching and ranking."""

    def test_typo_matches(self, store: ConversationStore, index: SearchIndex) -> None:
        """A transposed letter should still find the conversation."""
        store.insert_conversations([
            make_conversation("py", name="Python decorators"),
            make_conversation("other", name="Gardening tips"),
        ])

        results = index.search("pyhton")

        assert [r.conversation.id for r in results] == ["py"]
        assert 0 < results[0].score < 1

    def test_name_ranks_above_full_text(self, store: ConversationStore, index: SearchIndex) -> None:
        """A name match should outrank an identical body match."""
        store.insert_conversations([
            make_conversation("body", offset_minutes=5, name="Misc", full_text="notes on python decorators"),
            make_conversation("title", offset_minutes=0, name="Python decorators"),
        ])

        results = index.search("python decorators")

        assert [r.conversation.id for r in results] == ["title", "body"]
        assert results[0].score == 1.0
        assert results[1].score == 0.5

    def test_summary_between_name_and_body(self, store: ConversationStore, index: SearchIndex) -> None:
        """Summary matches should rank between name and body matches."""
        store.insert_conversations([
            make_conversation("body", name="One", full_text="kubernetes"),
            make_conversation("summary", name="Two", summary="kubernetes"),
            make_conversation("name", name="kubernetes"),
        ])

        assert [r.conversation.id for r in index.search("kubernetes")] == ["name", "summary", "body"]

    def test_match_details_and_snippet(self, store: ConversationStore, index: SearchIndex) -> None:
        """Matches should report field, inclusive indices and a body snippet."""
        body = "intro " * 20 + "the migration plan" + " outro" * 20
        store.insert_conversations([make_conversation("a", name="Planning", full_text=body)])

        result = index.search("migration")[0]

        match = next(m for m in result.matches if m.key == "full_text")
        start, end = match.indices[0]
        assert body[start : end + 1] == "migration"
        assert result.snippet.startswith("...")
        assert result.snippet.endswith("...")
        assert "migration" in result.snippet

    def test_no_match(self, store: ConversationStore, index: SearchIndex) -> None:
        """Unrelated queries should return nothing."""
        store.insert_conversations([make_conversation("a", name="Python decorators")])
        assert index.search("zebra") == []

    def test_blank_query(self, store: ConversationStore, index: SearchIndex) -> None:
        """Blank queries should return nothing without building."""
        store.insert_conversations([make_conversation("a")])

        assert index.search("   ") == []
        assert not index.is_ready

    def test_source_filter_and_limit(self, store: ConversationStore, index: SearchIndex) -> None:
        """Source filtering should apply before the limit."""
        store.insert_conversations([
            make_conversation("web1", offset_minutes=3, name="deploy notes"),
            make_conversation("web2", offset_minutes=2, name="deploy notes"),
            make_conversation("cli1", offset_minutes=1, name="deploy notes", source=CLI_LOG),
        ])

        assert [r.conversation.id for r in index.search("deploy", source=CLI_LOG, limit=1)] == ["cli1"]
        assert len(index.search("deploy", limit=2)) == 2


class TestInvalidation:
    """Tests for rebuilds after store mutations."""

    def test_insert_invalidates(self, store: ConversationStore, index: SearchIndex) -> None:
        """New conversations should be searchable after an insert."""
        store.insert_conversations([make_conversation("a", name="first topic")])
        assert len(index.search("topic")) == 1
        generation = index.generation

        store.insert_conversations([make_conversation("b", name="second topic")])

        assert not index.is_ready
        assert index.generation > generation
        assert len(index.search("topic")) == 2

    def test_delete_invalidates(self, store: ConversationStore, index: SearchIndex) -> None:
        """Deleted conversations should disappear from results."""
        store.insert_conversations([make_conversation("a", name="first topic")])
        assert len(index.search("topic")) == 1

        store.delete_conversation("a")

        assert index.search("topic") == []

    def test_unattached_index_stays_stale(self, store: ConversationStore) -> None:
        """Without attach, writes should not reach an already built index."""
        index = SearchIndex(store)
        store.insert_conversations([make_conversation("a", name="first topic")])
        assert len(index.search("topic")) == 1

        store.insert_conversations([make_conversation("b", name="second topic")])

        assert len(index.search("topic")) == 1
        index.invalidate()
        assert len(index.search("topic")) == 2

    def test_stale_build_is_discarded(self, store: ConversationStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """A build that races an invalidation should not install its result."""
        index = SearchIndex(store)
        store.insert_conversations([make_conversation("a")])
        original = store.get_all_conversations

        def racing_snapshot(*args, **kwargs):
            conversations = original(*args, **kwargs)
            index.invalidate()
            return conversations

        monkeypatch.setattr(store, "get_all_conversations", racing_snapshot)

        assert index.build() is False
        assert not index.is_ready

        monkeypatch.setattr(store, "get_all_conversations", original)
        assert index.build() is True
        assert index.is_ready

    def test_search_retries_a_discarded_build(self, store: ConversationStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """Search should rebuild until a build is installed, then use the requested tier."""
        index = SearchIndex(store, free_tier_limit=1)
        store.insert_conversations([
            make_conversation("old", offset_minutes=0, name="release notes"),
            make_conversation("new", offset_minutes=1, name="release plan"),
        ])
        original = store.get_all_conversations
        snapshots = []

        def racing_once(*args, **kwargs):
            conversations = original(*args, **kwargs)
            snapshots.append(len(conversations))
            if len(snapshots) == 1:
                index.invalidate()
            return conversations

        monkeypatch.setattr(store, "get_all_conversations", racing_once)

        assert [r.conversation.id for r in index.search("release", tier="pro")] == ["new", "old"]
        assert len(snapshots) == 2
        assert [r.conversation.id for r in index.search("release")] == ["new"]
        assert len(snapshots) == 2
