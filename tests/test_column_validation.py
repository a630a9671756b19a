import unittest
from dataclasses import dataclass, field

from crudspec.core.config import settings
from crudspec.core.errors import ColumnValidationError
from crudspec.schemas.query import FilterOption, PreloadOption, QueryOptions, SortOption
from crudspec.services.column_validation import ColumnValidator


@dataclass
class _Post:
    __tablename__ = "posts"

    id: int = field(default=0, metadata={"db": "id,pk"})
    title: str = ""
    data: str = field(default="", metadata={"db": "data,type:jsonb"})
    author_id: int = 0


@dataclass
class _Comment:
    id: int = field(default=0, metadata={"db": "id,pk"})
    body: str = ""


class ColumnValidatorTests(unittest.TestCase):
    def setUp(self):
        self.validator = ColumnValidator(_Post, relations={"comments": _Comment})

    def test_empty_name_is_always_valid(self):
        self.assertTrue(self.validator.is_valid_column(""))
        self.validator.validate_column("")

    def test_computed_prefix_bypasses_whitelist(self):
        self.assertTrue(self.validator.is_valid_column("cql_score"))
        self.assertTrue(self.validator.is_valid_column("CQLRank"))

    def test_computed_prefix_follows_settings(self):
        backup = settings.COMPUTED_COLUMN_PREFIX
        try:
            settings.COMPUTED_COLUMN_PREFIX = "calc_"
            self.assertTrue(self.validator.is_valid_column("calc_total"))
            self.assertFalse(self.validator.is_valid_column("cql_total"))
        finally:
            settings.COMPUTED_COLUMN_PREFIX = backup

    def test_json_navigation_uses_base_column(self):
        self.assertTrue(self.validator.is_valid_column("data->>'name'"))
        self.assertTrue(self.validator.is_valid_column("data->'a'->>'b'"))
        self.assertFalse(self.validator.is_valid_column("meta->>'name'"))

    def test_membership_is_case_insensitive(self):
        self.assertTrue(self.validator.is_valid_column("TITLE"))
        self.assertTrue(self.validator.is_valid_column("posts.title"))
        self.assertFalse(self.validator.is_valid_column("users.title"))
        self.assertFalse(self.validator.is_valid_column("password"))

    def test_validate_column_raises(self):
        with self.assertRaises(ColumnValidationError) as ctx:
            self.validator.validate_column("password")
        self.assertEqual(ctx.exception.invalid_columns, ["password"])

    def test_validate_columns_lists_every_offender(self):
        with self.assertRaises(ColumnValidationError) as ctx:
            self.validator.validate_columns(["id", "nope", "title", "ghost"])
        self.assertEqual(ctx.exception.invalid_columns, ["nope", "ghost"])

    def test_filter_valid_columns_warns(self):
        with self.assertLogs("crudspec.validation", level="WARNING") as logs:
            result = self.validator.filter_valid_columns(["id", "nope", "title"])
        self.assertEqual(result, ["id", "title"])
        self.assertIn("nope", logs.output[0])

    def test_valid_columns_sorted(self):
        self.assertEqual(self.validator.valid_columns(), ["author_id", "data", "id", "title"])


class RequestOptionsValidationTests(unittest.TestCase):
    def setUp(self):
        self.validator = ColumnValidator(_Post, relations={"comments": _Comment})

    def _options(self):
        return QueryOptions(
            columns=["id", "bogus_col"],
            omit_columns=["title"],
            filters=[FilterOption(column="author_id", value=1), FilterOption(column="bad_filter", value=2)],
            sort=[
                SortOption(column="title desc"),
                SortOption(column="author.name"),
                SortOption(column="bad_sort nulls last"),
            ],
            preload=[
                PreloadOption(
                    relation="comments",
                    columns=["body", "title"],
                    filters=[FilterOption(column="body", operator="like", value="%x%")],
                )
            ],
        )

    def test_fail_fast_aggregates_every_section(self):
        with self.assertRaises(ColumnValidationError) as ctx:
            self.validator.validate_options(self._options())
        self.assertEqual(ctx.exception.invalid_columns, ["bogus_col", "bad_filter", "bad_sort nulls last", "title"])
        message = str(ctx.exception)
        self.assertIn("select columns", message)
        self.assertIn("preload 'comments' columns", message)

    def test_valid_options_pass(self):
        self.validator.validate_options(
            QueryOptions(columns=["id"], sort=[SortOption(column="posts.title", direction="desc")])
        )

    def test_filter_mode_returns_pruned_copy(self):
        options = self._options()
        with self.assertLogs("crudspec.validation", level="WARNING"):
            pruned = self.validator.filter_options(options)
        self.assertEqual(pruned.columns, ["id"])
        self.assertEqual([f.column for f in pruned.filters], ["author_id"])
        self.assertEqual([s.column for s in pruned.sort], ["title desc", "author.name"])
        self.assertEqual(pruned.preload[0].columns, ["body"])
        self.assertEqual(len(pruned.preload[0].filters), 1)
        # the request itself is untouched
        self.assertEqual(options.columns, ["id", "bogus_col"])
        self.assertEqual(len(options.sort), 3)


if __name__ == "__main__":
    unittest.main()
