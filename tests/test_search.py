"""Tests for keyword retrieval."""

import pytest

from bookmark_index.core.search import (
    MAX_TOP_K,
    clamp_top_k,
    rank_slices,
    score_slice,
    search_context,
)
from bookmark_index.core.storage import DB, PersistedSlice, connect


def make_slice(title: str, text: str, url: str = "https://example.com", position: int = 0) -> PersistedSlice:
    return PersistedSlice(id=f"{url}#{position}", url=url, title=title, text=text, position=position)


@pytest.fixture
def db():
    conn = connect(":memory:")
    database = DB(conn=conn)
    database.init()
    yield database
    conn.close()


class TestScoreSlice:
    def test_case_insensitive(self):
        s = make_slice("Guide", "PYTHON python PyThOn")
        assert score_slice(s, ["python"]) == 3
        assert score_slice(s, ["PYTHON"]) == 3

    def test_substring_matches(self):
        assert score_slice(make_slice("", "preact and react"), ["react"]) == 2

    def test_title_bonus(self):
        with_title = make_slice("React Hooks", "body text")
        without_title = make_slice("Other", "body text")
        # Title occurrences count once each plus the flat bonus
        assert score_slice(with_title, ["react", "hooks"]) == 2 + 2 + 2
        assert score_slice(without_title, ["react", "hooks"]) == 0

    def test_title_match_scores_strictly_higher(self):
        body = "react hooks are handy"
        assert score_slice(make_slice("React Hooks", body), ["react", "hooks"]) > score_slice(
            make_slice("Notes", body), ["react", "hooks"]
        )

    def test_short_words_ignored(self):
        s = make_slice("a", "a a a b")
        assert score_slice(s, ["a", "b"]) == 0

    def test_regex_metacharacters_are_literal(self):
        s = make_slice("C++ (tips)", "Use c++ wisely. [x]* .*")
        assert score_slice(s, ["c++"]) == 2 + 2
        assert score_slice(s, [".*"]) == 1
        assert score_slice(s, ["(tips)"]) == 1 + 2


class TestClampTopK:
    @pytest.mark.parametrize(
        "value,expected",
        [(None, 3), (0, 1), (-5, 1), (1, 1), (7, 7), (20, 20), (21, 20), (1000, MAX_TOP_K)],
    )
    def test_clamp(self, value, expected):
        assert clamp_top_k(value) == expected


class TestRankSlices:
    def test_stable_ties(self):
        slices = [make_slice("t", "match", position=i) for i in range(3)]
        ranked = rank_slices(slices, ["match"], 3)
        assert [r.slice.position for r in ranked] == [0, 1, 2]

    def test_no_match_returns_empty(self):
        assert rank_slices([make_slice("a", "b")], ["zzz"], 3) == []

    def test_drops_zero_scores_and_truncates(self):
        slices = [make_slice("t", "x " * i, position=i) for i in range(6)]
        ranked = rank_slices(slices, ["x"], 3)
        assert [r.slice.position for r in ranked] == [5, 4, 3]


class TestSearchContext:
    def test_react_hooks_ranked_first(self, db):
        db.save_slice(make_slice("Vue Intro", "Vue is a progressive framework.", url="https://vue.example"))
        db.save_slice(
            make_slice("React Hooks Guide", "Hooks let React components use state.", url="https://react.example")
        )

        response = search_context(db, "react hooks")

        assert response.error is None
        assert response.results[0].title == "React Hooks Guide"
        assert response.results[0].score > 0
        assert all(r.title != "Vue Intro" for r in response.results)

    def test_no_match_is_empty(self, db):
        db.save_slice(make_slice("Vue Intro", "Vue is a progressive framework."))
        assert search_context(db, "kubernetes").results == []

    def test_top_k_is_clamped(self, db):
        for i in range(30):
            db.save_slice(make_slice("doc", "match", url=f"https://example.com/{i}"))
        assert len(search_context(db, "match", top_k=100).results) == 20
        assert len(search_context(db, "match", top_k=0).results) == 1
        assert len(search_context(db, "match").results) == 3

    def test_url_filter_without_query_orders_by_position(self, db):
        for position in (3, 1, 0, 2):
            db.save_slice(make_slice("Page", f"part {position}", url="https://a.example", position=position))
        db.save_slice(make_slice("Other", "part 9", url="https://b.example"))

        response = search_context(db, url="https://a.example", top_k=3)
        assert [r.text for r in response.results] == ["part 0", "part 1", "part 2"]

    def test_url_filter_with_query(self, db):
        db.save_slice(make_slice("Page", "alpha beta", url="https://a.example", position=0))
        db.save_slice(make_slice("Page", "alpha", url="https://a.example", position=1))
        db.save_slice(make_slice("Page", "beta beta beta", url="https://b.example", position=0))

        response = search_context(db, "beta", url="https://a.example")
        assert [r.text for r in response.results] == ["alpha beta"]

    def test_unknown_url(self, db):
        assert search_context(db, "anything", url="https://missing.example").results == []

    def test_storage_error_reported(self):
        class BrokenStorage:
            def list_slices(self, url=None, dimensions=None):
                raise RuntimeError("database is locked")

        response = search_context(BrokenStorage(), "query")
        assert response.results == []
        assert response.error == "database is locked"

    def test_to_dict(self, db):
        db.save_slice(make_slice("React", "react"))
        data = search_context(db, "react").to_dict()
        assert data["results"][0]["title"] == "React"
        assert "error" not in data
