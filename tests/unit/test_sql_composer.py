"""Unit tests for the SQL rewrites and multi-turn composition."""

from __future__ import annotations

import pytest
from entities.query_validator import (
    SQLValidator,
    compose,
    compose_turn,
    enforce_row_limit,
    fix_order_by_aliases,
    qualify_tables,
    validate_lineage,
)
from entities.shared.errors import CompositionError
from models import CompositionStrategy, ConversationTurn

CASE_SQL = (
    "SELECT id, CASE WHEN score > 5 THEN 'high' ELSE 'low' END AS priority "
    "FROM rpt.Task ORDER BY priority DESC"
)


class TestFixOrderByAliases:
    """ORDER BY <computed alias> is rewritten to the defining expression."""

    def test_case_alias_rewritten(self) -> None:
        """The CASE alias is replaced and the result validates."""
        result = fix_order_by_aliases(CASE_SQL)

        assert result.changed is True
        assert result.sql.endswith(
            "ORDER BY CASE WHEN score > 5 THEN 'high' ELSE 'low' END DESC"
        )
        assert SQLValidator().validate(result.sql).is_valid is True

    def test_rewrite_is_idempotent(self) -> None:
        """Rewriting already-fixed SQL changes nothing."""
        once = fix_order_by_aliases(CASE_SQL).sql
        twice = fix_order_by_aliases(once)

        assert twice.changed is False
        assert twice.sql == once

    def test_plain_alias_untouched(self) -> None:
        """Aliases of plain columns are left alone."""
        sql = "SELECT name AS n FROM rpt.Patient ORDER BY n"
        result = fix_order_by_aliases(sql)

        assert result.changed is False
        assert result.sql == sql

    def test_ambiguous_alias_reported(self) -> None:
        """An alias defined twice is reported and not rewritten."""
        sql = "SELECT a + b AS total, c * 2 AS total FROM rpt.T ORDER BY total"
        result = fix_order_by_aliases(sql)

        assert result.changed is False
        assert result.sql == sql
        assert len(result.issues) == 1

    def test_no_order_by(self) -> None:
        """SQL without ORDER BY is returned unchanged."""
        result = fix_order_by_aliases("SELECT id FROM rpt.Task")

        assert result.changed is False


class TestEnforceRowLimit:
    """TOP is injected when the main query has no row limit."""

    def test_injects_top(self) -> None:
        assert enforce_row_limit("SELECT name FROM rpt.Patient", 1000) == (
            "SELECT TOP 1000 name FROM rpt.Patient"
        )

    def test_distinct(self) -> None:
        """TOP follows DISTINCT."""
        assert enforce_row_limit("SELECT DISTINCT clinic FROM rpt.Visit", 50) == (
            "SELECT DISTINCT TOP 50 clinic FROM rpt.Visit"
        )

    def test_existing_top_kept(self) -> None:
        sql = "SELECT TOP 5 name FROM rpt.Patient"
        assert enforce_row_limit(sql, 1000) == sql

    def test_offset_kept(self) -> None:
        """OFFSET / FETCH paging is left alone."""
        sql = "SELECT name FROM rpt.Patient ORDER BY name OFFSET 0 ROWS FETCH NEXT 10 ROWS ONLY"
        assert enforce_row_limit(sql, 1000) == sql

    def test_limit_only_checked_on_main_query(self) -> None:
        """A TOP inside a CTE does not limit the outer query."""
        sql = "WITH v AS (SELECT TOP 5 id FROM rpt.Visit) SELECT id FROM v"

        assert enforce_row_limit(sql, 1000) == (
            "WITH v AS (SELECT TOP 5 id FROM rpt.Visit) SELECT TOP 1000 id FROM v"
        )


class TestQualifyTables:
    """Bare table names gain the schema prefix."""

    def test_qualifies_bare_names(self) -> None:
        sql = "SELECT p.name FROM Patient p JOIN rpt.Visit v ON v.patient_id = p.id"

        assert qualify_tables(sql, "rpt") == (
            "SELECT p.name FROM rpt.Patient p JOIN rpt.Visit v ON v.patient_id = p.id"
        )

    def test_only_known_tables(self) -> None:
        """With a table list only those names are qualified."""
        sql = "SELECT * FROM Patient JOIN Visit ON 1 = 1"

        assert qualify_tables(sql, "rpt", ["visit"]) == (
            "SELECT * FROM Patient JOIN rpt.Visit ON 1 = 1"
        )

    def test_cte_names_untouched(self) -> None:
        sql = "WITH recent AS (SELECT id FROM Visit) SELECT id FROM recent"

        assert qualify_tables(sql, "rpt") == (
            "WITH recent AS (SELECT id FROM rpt.Visit) SELECT id FROM recent"
        )


class TestCompose:
    """Follow-up SQL is composed over the parent turn's SQL."""

    PRIOR = "SELECT TOP 1000 clinic, COUNT(*) AS visits FROM rpt.Visit GROUP BY clinic"

    def test_fresh_returns_new_sql(self) -> None:
        """The fresh strategy is the identity on the new SQL."""
        new_sql = "SELECT id FROM rpt.Patient"

        assert compose(self.PRIOR, new_sql, CompositionStrategy.FRESH) == new_sql
        assert compose(None, new_sql, "fresh") == new_sql

    def test_composed_wraps_previous_result(self) -> None:
        """The parent becomes the previous_result CTE."""
        composed = compose(self.PRIOR, "SELECT clinic FROM previous_result WHERE visits > 10")

        assert composed.startswith("WITH previous_result AS (")
        assert self.PRIOR in composed
        assert composed.endswith("SELECT clinic FROM previous_result WHERE visits > 10")
        assert SQLValidator().validate(composed).is_valid is True

    def test_fresh_over_composed_output(self) -> None:
        """Composing fresh over a composed statement returns it unchanged."""
        composed = compose(self.PRIOR, "SELECT clinic FROM previous_result")

        assert compose(composed, composed, "fresh") == composed

    def test_parent_ctes_hoisted_and_renamed(self) -> None:
        """A parent CTE colliding with the follow-up's CTE is renamed."""
        prior = (
            "WITH base AS (SELECT id, clinic FROM rpt.Visit) "
            "SELECT clinic, COUNT(*) AS n FROM base GROUP BY clinic"
        )
        new_sql = (
            "WITH base AS (SELECT clinic FROM previous_result WHERE n > 5) "
            "SELECT clinic FROM base"
        )
        composed = compose(prior, new_sql)

        assert composed.startswith("WITH base_1 AS (")
        assert "FROM base_1 GROUP BY clinic" in composed
        assert composed.count("WITH") == 1
        assert SQLValidator().validate(composed).is_valid is True

    def test_unbounded_order_by_dropped_from_parent(self) -> None:
        """ORDER BY without TOP is not allowed inside a CTE."""
        composed = compose(
            "SELECT name FROM rpt.Patient ORDER BY name", "SELECT name FROM previous_result"
        )

        assert "ORDER BY" not in composed

    def test_depth_limit(self) -> None:
        """The CTE chain is capped."""
        sql = "SELECT id FROM rpt.Visit"
        follow_up = "SELECT * FROM previous_result"
        for _ in range(3):
            sql = compose(sql, follow_up)

        with pytest.raises(CompositionError):
            compose(sql, follow_up)

    def test_temp_tables_rejected(self) -> None:
        with pytest.raises(CompositionError):
            compose("SELECT id FROM #scratch", "SELECT * FROM previous_result")

    def test_composed_requires_parent(self) -> None:
        with pytest.raises(CompositionError):
            compose(None, "SELECT * FROM previous_result")


class TestConversationLineage:
    """Turns form an acyclic chain with increasing sequence ids."""

    def test_sequence_ids_increase(self) -> None:
        first = compose_turn(None, "Visits per clinic", "SELECT clinic FROM rpt.Visit")
        second = compose_turn(
            first, "Only busy ones", "SELECT * FROM previous_result", "composed"
        )

        assert first.sequence_id == 0
        assert second.sequence_id == 1
        assert second.parent_sequence_id == 0
        assert second.sql.startswith("WITH previous_result AS (")
        validate_lineage([first, second])

    def test_composed_turn_needs_parent(self) -> None:
        with pytest.raises(CompositionError):
            compose_turn(None, "q", "SELECT 1", CompositionStrategy.COMPOSED)

    def test_cycle_rejected(self) -> None:
        """A parent that is not older than its child is a cycle."""
        turns = [
            ConversationTurn(sequence_id=0, question="a", sql="SELECT 1"),
            ConversationTurn(
                sequence_id=1,
                question="b",
                sql="SELECT 2",
                strategy=CompositionStrategy.COMPOSED,
                parent_sequence_id=1,
            ),
        ]

        with pytest.raises(CompositionError):
            validate_lineage(turns)

    def test_unknown_parent_rejected(self) -> None:
        turns = [
            ConversationTurn(
                sequence_id=3,
                question="b",
                sql="SELECT 2",
                strategy=CompositionStrategy.COMPOSED,
                parent_sequence_id=2,
            )
        ]

        with pytest.raises(CompositionError):
            validate_lineage(turns)
