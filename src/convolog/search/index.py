"""In-memory fuzzy search over stored conversations.

The index is a derived cache of the conversation store. It is never updated
in place: any store mutation invalidates it (see `SearchIndex.attach`) and
the next search rebuilds it from the store.

Two indexes are built from the same snapshot. The pro index covers every
conversation; the free index covers only the most recent `free_tier_limit`
conversations by creation time.
"""

import difflib
import re
from dataclasses import dataclass, field

from convolog.logging import get_logger
from convolog.models import Conversation
from convolog.storage.store import ConversationStore

logger = get_logger("search")

FREE_TIER = "free"
PRO_TIER = "pro"

# Field weights; name matches rank above summary, summary above body
FIELD_WEIGHTS: dict[str, float] = {
    "name": 2.0,
    "summary": 1.5,
    "full_text": 1.0,
}

MIN_QUERY_TOKEN_LENGTH = 2
SNIPPET_FALLBACK_CHARS = 150

WORD_RE = re.compile(r"[A-Za-z0-9_]+")


@dataclass
class SearchMatch:
    """Where a query matched inside one field.

    indices are inclusive (start, end) character ranges.
    """

    key: str
    value: str
    score: float
    indices: list[tuple[int, int]] = field(default_factory=list)


@dataclass
class SearchResult:
    conversation: Conversation
    score: float
    matches: list[SearchMatch]
    snippet: str


def tokenize_query(query: str) -> list[str]:
    tokens = [token.lower() for token in WORD_RE.findall(query)]
    return [token for token in tokens if len(token) >= MIN_QUERY_TOKEN_LENGTH]


def extract_snippet(text: str, indices: list[tuple[int, int]], context_length: int = 60) -> str:
    """Cut a snippet of text around the first match.

    Args:
        text: Field value the match was found in
        indices: Inclusive (start, end) match ranges
        context_length: Characters of context on each side

    Returns:
        Snippet with "..." marking truncation on either side
    """
    if not indices or not text:
        return text[:SNIPPET_FALLBACK_CHARS] + ("..." if len(text) > SNIPPET_FALLBACK_CHARS else "")

    start, end = indices[0]
    snippet_start = max(0, start - context_length)
    snippet_end = min(len(text), end + 1 + context_length)

    snippet = text[snippet_start:snippet_end]
    if snippet_start > 0:
        snippet = "..." + snippet
    if snippet_end < len(text):
        snippet = snippet + "..."
    return snippet


class _FieldIndex:
    """Lowercased text and word positions of one field of one conversation."""

    __slots__ = ("key", "value", "lowered", "word_starts")

    def __init__(self, key: str, value: str) -> None:
        self.key = key
        self.value = value
        self.lowered = value.lower()
        # First occurrence of every distinct word
        self.word_starts: dict[str, int] = {}
        for match in WORD_RE.finditer(self.lowered):
            self.word_starts.setdefault(match.group(), match.start())

    def match(self, query: str, tokens: list[str], min_similarity: float) -> SearchMatch | None:
        if not self.lowered:
            return None

        position = self.lowered.find(query)
        if position >= 0:
            return SearchMatch(
                key=self.key,
                value=self.value,
                score=1.0,
                indices=[(position, position + len(query) - 1)],
            )

        if not tokens:
            return None

        indices: list[tuple[int, int]] = []
        similarity_total = 0.0
        vocabulary = list(self.word_starts)
        for token in tokens:
            close = difflib.get_close_matches(token, vocabulary, n=1, cutoff=min_similarity)
            if not close:
                return None
            word = close[0]
            similarity_total += difflib.SequenceMatcher(None, token, word).ratio()
            start = self.word_starts[word]
            indices.append((start, start + len(word) - 1))

        indices.sort()
        return SearchMatch(
            key=self.key,
            value=self.value,
            score=similarity_total / len(tokens),
            indices=indices,
        )


class _FuzzyIndex:
    """Fuzzy matcher over a fixed list of conversations."""

    def __init__(self, conversations: list[Conversation]) -> None:
        self.conversations = conversations
        self._fields = [
            (
                conversation,
                [
                    _FieldIndex("name", conversation.name or ""),
                    _FieldIndex("summary", conversation.summary or ""),
                    _FieldIndex("full_text", conversation.full_text or ""),
                ],
            )
            for conversation in conversations
        ]

    def __len__(self) -> int:
        return len(self.conversations)

    def search(self, query: str, min_similarity: float) -> list[tuple[Conversation, float, list[SearchMatch]]]:
        lowered = query.strip().lower()
        tokens = tokenize_query(query)
        max_weight = max(FIELD_WEIGHTS.values())

        hits = []
        for conversation, fields in self._fields:
            matches = []
            for field_index in fields:
                found = field_index.match(lowered, tokens, min_similarity)
                if found is not None:
                    matches.append(found)
            if not matches:
                continue
            score = max(m.score * FIELD_WEIGHTS[m.key] / max_weight for m in matches)
            hits.append((conversation, score, matches))

        # Stable sort keeps recency order among equal scores
        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits


class SearchIndex:
    """Tiered fuzzy search index over a ConversationStore.

    Builds lazily on first search. A generation counter guards against a
    build installing results from a snapshot taken before the latest
    invalidation.
    """

    def __init__(
        self,
        store: ConversationStore,
        free_tier_limit: int = 100,
        threshold: float = 0.3,
        snippet_context: int = 60,
    ) -> None:
        """Initialize the index.

        Args:
            store: Conversation store to index
            free_tier_limit: Number of most recent conversations on the free tier
            threshold: Match tolerance, 0.0 requires exact words, 1.0 matches anything
            snippet_context: Characters of context around a match in snippets
        """
        self._store = store
        self.free_tier_limit = free_tier_limit
        self.threshold = threshold
        self.snippet_context = snippet_context

        self._generation = 0
        self._free: _FuzzyIndex | None = None
        self._pro: _FuzzyIndex | None = None
        self._total = 0

    def attach(self) -> None:
        """Invalidate this index whenever the store is written to."""
        self._store.add_mutation_listener(self._on_store_mutation)

    def _on_store_mutation(self, operation: str) -> None:
        logger.debug("Store mutated, invalidating search index: operation=%s", operation)
        self.invalidate()

    @property
    def is_ready(self) -> bool:
        return self._free is not None and self._pro is not None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def total_count(self) -> int:
        """Number of conversations in the store at the last build."""
        return self._total

    def indexed_count(self, tier: str = FREE_TIER) -> int:
        index = self._pro if tier == PRO_TIER else self._free
        return len(index) if index is not None else 0

    def build(self) -> bool:
        """Rebuild both indexes from the store.

        Returns:
            True if the result was installed, False if the index was
            invalidated while building
        """
        generation = self._generation

        conversations = self._store.get_all_conversations(limit=None)
        conversations.sort(key=lambda c: c.created_at, reverse=True)

        pro = _FuzzyIndex(conversations)
        free = _FuzzyIndex(conversations[: self.free_tier_limit])

        if generation != self._generation:
            logger.debug("Discarding stale search index build: generation=%d", generation)
            return False

        self._pro = pro
        self._free = free
        self._total = len(conversations)
        logger.info(
            "Built search index: total=%d free=%d generation=%d",
            len(pro),
            len(free),
            generation,
        )
        return True

    def invalidate(self) -> None:
        """Drop both indexes; the next search rebuilds from the store."""
        self._generation += 1
        self._free = None
        self._pro = None
        self._total = 0

    def _ensure_index(self, tier: str) -> _FuzzyIndex:
        while True:
            free, pro = self._free, self._pro
            if free is not None and pro is not None:
                return pro if tier == PRO_TIER else free
            self.build()

    def search(
        self,
        query: str,
        source: str | None = None,
        limit: int | None = None,
        tier: str = FREE_TIER,
    ) -> list[SearchResult]:
        """Fuzzy search conversations.

        Args:
            query: Search text
            source: Only return conversations from this source
            limit: Maximum number of results
            tier: "free" (most recent conversations only) or "pro"

        Returns:
            Results ordered by score, best first
        """
        if tier not in (FREE_TIER, PRO_TIER):
            raise ValueError(f"Unknown search tier: {tier!r}")

        if not query.strip():
            return []

        index = self._ensure_index(tier)
        hits = index.search(query, min_similarity=1.0 - self.threshold)

        if source is not None:
            hits = [hit for hit in hits if hit[0].source == source]

        if limit is not None:
            hits = hits[:limit]

        return [
            SearchResult(
                conversation=conversation,
                score=score,
                matches=matches,
                snippet=self._snippet(conversation, matches),
            )
            for conversation, score, matches in hits
        ]

    def _snippet(self, conversation: Conversation, matches: list[SearchMatch]) -> str:
        by_key = {match.key: match for match in matches}
        for key in ("full_text", "summary", "name"):
            match = by_key.get(key)
            if match is not None:
                return extract_snippet(match.value, match.indices, self.snippet_context)
        if conversation.summary:
            return conversation.summary
        return extract_snippet(conversation.full_text, [], self.snippet_context)
