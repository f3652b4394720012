"""
Unit tests for predicate evaluation shared by the store backends.
"""

import pytest

from dbaas.docquery.errors import ValidationError
from dbaas.docquery.store.base import QueryPredicates, StoredDocument
from dbaas.docquery.store.filters import apply_predicates, matches, order_documents


def doc(doc_id, **data):
    return StoredDocument("items", doc_id, data, 1)


class TestMatches:
    """Tests for single where clauses."""

    def test_equality(self):
        d = doc("a", status="open")

        assert matches(d, "status", "==", "open")
        assert not matches(d, "status", "==", "closed")

    def test_not_equal_excludes_missing(self):
        assert matches(doc("a", n=1), "n", "!=", 2)
        assert not matches(doc("a"), "n", "!=", 2)

    def test_range_requires_compatible_types(self):
        d = doc("a", n=5, s="m")

        assert matches(d, "n", ">", 3)
        assert matches(d, "n", "<=", 5.0)
        assert not matches(d, "n", ">", "3")
        assert matches(d, "s", ">=", "a")

    def test_bool_not_compared_with_numbers(self):
        assert not matches(doc("a", flag=True), "flag", ">", 0)

    def test_in_and_not_in(self):
        d = doc("a", tier="gold")

        assert matches(d, "tier", "in", ["gold", "silver"])
        assert not matches(d, "tier", "not-in", ["gold"])
        assert matches(d, "tier", "not-in", ["bronze"])

    def test_array_contains(self):
        d = doc("a", tags=["x", "y"])

        assert matches(d, "tags", "array-contains", "x")
        assert not matches(d, "tags", "array-contains", "z")
        assert matches(d, "tags", "array-contains-any", ["z", "y"])

    def test_document_id_path(self):
        assert matches(doc("a1"), "__name__", "in", ["a1", "a2"])

    def test_dotted_path(self):
        assert matches(doc("a", owner={"name": "kim"}), "owner.name", "==", "kim")

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            matches(doc("a", n=1), "n", "~", 1)


class TestOrdering:
    """Tests for order-by and limit handling."""

    def test_multi_clause_order(self):
        docs = [doc("a", g=1, n=2), doc("b", g=0, n=5), doc("c", g=1, n=1)]

        ordered = order_documents(docs, [("g", "desc"), ("n", "asc")])

        assert [d.id for d in ordered] == ["c", "a", "b"]

    def test_missing_order_field_excluded(self):
        docs = [doc("a", n=2), doc("b"), doc("c", n=1)]

        ordered = order_documents(docs, [("n", "asc")])

        assert [d.id for d in ordered] == ["c", "a"]

    def test_ties_keep_store_order(self):
        docs = [doc("a", n=1), doc("b", n=1), doc("c", n=1)]

        assert [d.id for d in order_documents(docs, [("n", "desc")])] == ["a", "b", "c"]

    def test_where_then_order_then_limit(self):
        docs = [doc(str(i), n=i, even=i % 2 == 0) for i in range(10)]
        predicates = QueryPredicates(
            where=(("even", "==", True),),
            order_by=(("n", "desc"),),
            limit=3,
        )

        result = apply_predicates(docs, predicates)

        assert [d.id for d in result] == ["8", "6", "4"]
