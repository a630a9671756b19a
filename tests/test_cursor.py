import unittest

from pydantic import ValidationError

from crudspec.core.config import settings
from crudspec.core.errors import StructuralError
from crudspec.schemas.query import ComputedColumn, QueryOptions, SortOption
from crudspec.services.cursor import (
    CursorComparison,
    build_cursor_filter,
    build_order_by,
    build_priority_chain,
    rewrite_join,
)

_AUTHOR_JOIN = "LEFT JOIN users author ON author.id = posts.author_id"


def _options(*sort, forward="", backward="", computed=()):
    return QueryOptions(
        sort=[SortOption(column=c, direction=d) for c, d in sort],
        cursor_forward=forward,
        cursor_backward=backward,
        computed_columns=[ComputedColumn(name=n, expression=e) for n, e in computed],
    )


class CursorPreconditionTests(unittest.TestCase):
    def test_missing_token(self):
        with self.assertRaises(StructuralError):
            build_cursor_filter(_options(("id", "asc")), "posts", "id")

    def test_both_tokens(self):
        with self.assertRaises(ValidationError):
            _options(("id", "asc"), forward="1", backward="2")
        options = QueryOptions.model_construct(sort=[SortOption(column="id")], cursor_forward="1", cursor_backward="2")
        with self.assertRaises(StructuralError):
            build_cursor_filter(options, "posts", "id")

    def test_empty_sort(self):
        with self.assertRaises(StructuralError):
            build_cursor_filter(_options(forward="1"), "posts", "id")

    def test_every_sort_column_invalid(self):
        with self.assertLogs("crudspec.cursor", level="WARNING"):
            with self.assertRaises(StructuralError) as ctx:
                build_cursor_filter(_options(("ghost", "asc"), forward="1"), "posts", "id", model_columns=["id"])
        self.assertIn("no valid sort columns", str(ctx.exception))


class CursorFilterTests(unittest.TestCase):
    def test_single_column_forward(self):
        predicate = build_cursor_filter(_options(("id", "asc"), forward="42"), "posts", "id")
        self.assertIn("cursor_select.id < posts.id", predicate.sql)
        self.assertIn("WHERE cursor_select.id = 42 AND", predicate.sql)
        self.assertTrue(predicate.sql.startswith("EXISTS (SELECT 1 FROM posts cursor_select WHERE"))
        self.assertEqual(predicate.params, ())

    def test_backward_flips_the_inequality(self):
        predicate = build_cursor_filter(_options(("id", "asc"), backward="42"), "posts", "id")
        self.assertIn("cursor_select.id > posts.id", predicate.sql)
        self.assertNotIn("cursor_select.id < posts.id", predicate.sql)

    def test_embedded_marker_wins(self):
        predicate = build_cursor_filter(
            _options(("created_at desc", "asc"), ("title asc nulls last", "desc"), forward="3"), "posts", "id"
        )
        self.assertIn("cursor_select.created_at > posts.created_at", predicate.sql)
        self.assertIn("cursor_select.title < posts.title", predicate.sql)

    def test_keyset_chain_uses_equality_on_leading_columns(self):
        predicate = build_cursor_filter(_options(("score", "desc"), ("id", "asc"), forward="7"), "posts", "id")
        self.assertIn(
            "AND ((cursor_select.score > posts.score) OR "
            "(cursor_select.score = posts.score AND cursor_select.id < posts.id)))",
            predicate.sql,
        )

    def test_strict_prefix_mode(self):
        backup = settings.CURSOR_CHAIN_MODE
        try:
            settings.CURSOR_CHAIN_MODE = "strict_prefix"
            predicate = build_cursor_filter(_options(("score", "desc"), ("id", "asc"), forward="7"), "posts", "id")
        finally:
            settings.CURSOR_CHAIN_MODE = backup
        self.assertIn(
            "(cursor_select.score > posts.score) OR "
            "(cursor_select.score > posts.score AND cursor_select.id < posts.id)",
            predicate.sql,
        )

    def test_non_integer_token_is_bound(self):
        predicate = build_cursor_filter(_options(("id", "asc"), forward="a1b2-c3"), "posts", "uid")
        self.assertIn("cursor_select.uid = ?", predicate.sql)
        self.assertEqual(predicate.params, ("a1b2-c3",))

    def test_non_ascii_digit_token_is_bound(self):
        predicate = build_cursor_filter(_options(("id", "asc"), forward="٤٢"), "posts", "id")
        self.assertIn("cursor_select.id = ? AND", predicate.sql)
        self.assertEqual(predicate.params, ("٤٢",))

    def test_whitelisted_column_wins_over_relation_prefix(self):
        predicate = build_cursor_filter(_options(("author.name", "asc"), forward="1"), "posts", "id")
        self.assertIn("(cursor_select.name < posts.name)", predicate.sql)
        self.assertNotIn("JOIN", predicate.sql)

        predicate = build_cursor_filter(
            _options(("author.id", "desc"), forward="1"),
            "posts",
            "id",
            model_columns=["id"],
            expand_joins={"author": _AUTHOR_JOIN},
        )
        self.assertIn("(cursor_select.id > posts.id)", predicate.sql)

    def test_json_columns_skip_validation(self):
        predicate = build_cursor_filter(
            _options(("data->>'rank'", "asc"), forward="1"), "posts", "id", model_columns=["id"]
        )
        self.assertIn("cursor_select.data->>'rank' < posts.data->>'rank'", predicate.sql)

    def test_computed_columns(self):
        options = _options(("cql_len", "desc"), forward="1", computed=[("cql_len", "LENGTH(posts.title)")])
        predicate = build_cursor_filter(options, "posts", "id", model_columns=["id", "title"])
        self.assertIn("LENGTH(cursor_select.title) > LENGTH(posts.title)", predicate.sql)

        predicate = build_cursor_filter(
            _options(("cql_rank", "asc"), forward="1"),
            "posts",
            "id",
            model_columns=["id"],
            expressions={"cql_rank": "posts.score * 2"},
        )
        self.assertIn("cursor_select.score * 2 < posts.score * 2", predicate.sql)

    def test_invalid_column_is_skipped(self):
        with self.assertLogs("crudspec.cursor", level="WARNING") as logs:
            predicate = build_cursor_filter(
                _options(("ghost", "asc"), ("id", "asc"), forward="1"), "posts", "id", model_columns=["id", "title"]
            )
        self.assertIn("ghost", logs.output[0])
        self.assertNotIn("ghost", predicate.sql)
        self.assertIn("((cursor_select.id < posts.id))", predicate.sql)

    def test_join_columns(self):
        predicate = build_cursor_filter(
            _options(("author.name", "asc"), ("author.email", "desc"), ("id", "asc"), forward="5"),
            "posts",
            "id",
            model_columns=["id", "title", "author_id"],
            expand_joins={"author": _AUTHOR_JOIN},
        )
        self.assertIn(
            "FROM posts cursor_select LEFT JOIN users cursor_select_author "
            "ON cursor_select_author.id = cursor_select.author_id WHERE",
            predicate.sql,
        )
        self.assertEqual(predicate.sql.count("LEFT JOIN"), 1)
        self.assertIn("cursor_select_author.name < author.name", predicate.sql)
        self.assertIn("cursor_select_author.email > author.email", predicate.sql)

    def test_join_without_definition_is_skipped(self):
        with self.assertLogs("crudspec.cursor", level="WARNING") as logs:
            predicate = build_cursor_filter(
                _options(("author.name", "asc"), ("id", "asc"), forward="5"), "posts", "id", model_columns=["id"]
            )
        self.assertIn("author", logs.output[0])
        self.assertNotIn("author", predicate.sql)


class CursorHelperTests(unittest.TestCase):
    def test_rewrite_join_with_alias(self):
        sql, alias = rewrite_join(_AUTHOR_JOIN, "posts", "author")
        self.assertEqual(alias, "cursor_select_author")
        self.assertEqual(sql, "LEFT JOIN users cursor_select_author ON cursor_select_author.id = cursor_select.author_id")

    def test_rewrite_join_without_alias(self):
        sql, _ = rewrite_join("LEFT JOIN author ON author.id = posts.author_id", "posts", "author")
        self.assertEqual(sql, "LEFT JOIN author cursor_select_author ON cursor_select_author.id = cursor_select.author_id")

    def test_rewrite_join_leaves_similar_names(self):
        sql, _ = rewrite_join("JOIN users AS author ON author.id = posts.author_id AND xposts.id = 1", "posts", "author")
        self.assertEqual(
            sql, "JOIN users AS cursor_select_author ON cursor_select_author.id = cursor_select.author_id AND xposts.id = 1"
        )

    def test_priority_chain_modes(self):
        items = [CursorComparison("c.a", "<", "t.a"), CursorComparison("c.b", ">", "t.b"), CursorComparison("c.id", "<", "t.id")]
        self.assertEqual(
            build_priority_chain(items, "keyset"),
            "(c.a < t.a) OR (c.a = t.a AND c.b > t.b) OR (c.a = t.a AND c.b = t.b AND c.id < t.id)",
        )
        self.assertEqual(
            build_priority_chain(items, "strict_prefix"),
            "(c.a < t.a) OR (c.a < t.a AND c.b > t.b) OR (c.a < t.a AND c.b > t.b AND c.id < t.id)",
        )
        with self.assertRaises(StructuralError):
            build_priority_chain(items, "bogus")

    def test_order_by(self):
        sort = [SortOption(column="title desc nulls last"), SortOption(column="author.name"), SortOption(column="id")]
        self.assertEqual(
            build_order_by(sort, "posts"), ["posts.title DESC NULLS LAST", "author.name ASC", "posts.id ASC"]
        )
        self.assertEqual(
            build_order_by(sort, "posts", reverse=True),
            ["posts.title ASC NULLS FIRST", "author.name DESC", "posts.id DESC"],
        )

    def test_order_by_expressions(self):
        sort = [SortOption(column="cql_len", direction="desc")]
        self.assertEqual(
            build_order_by(sort, "posts", expressions={"cql_len": "LENGTH(posts.title)"}), ["LENGTH(posts.title) DESC"]
        )


if __name__ == "__main__":
    unittest.main()
