"""Tests for requirement CRUD, ranking, comments, criteria, squads, plan and analytics."""
from __future__ import annotations

import json

import pytest
from sqlalchemy import select

from prioritizer import services
from prioritizer.errors import NotFoundError, ValidationError
from prioritizer.models import EXCLUDED_RANK, Criterion, Requirement


@pytest.fixture()
def seeded(session):
    session.add_all([
        Requirement(key="PROJ-1", summary="Login page", status="Open", priority="High",
                    assignee="ana", labels="auth, web", related_customers="Acme, Globex",
                    rank=2, score=3.5, criteria_json=json.dumps({"tech_debt": 4})),
        Requirement(key="PROJ-2", summary="Billing export", status="Done", priority="",
                    assignee="", labels="billing", related_customers="Acme",
                    rank=1, score=4.5, criteria_json=json.dumps({"tech_debt": 5, "move_the_needle": 4})),
        Requirement(key="PROJ-3", summary="Dark mode", status="Open", rank=EXCLUDED_RANK, score=0.0),
    ])
    session.commit()
    return session


class TestRowToDict:
    def test_decodes_json_columns(self):
        row = {"key": "A", "criteria_json": '{"x": 2}', "comments_json": '[{"text": "hi", "timestamp": "t"}]',
               "score": None, "budget": "10"}
        out = services.row_to_dict(row)
        assert out["criteria"] == {"x": 2}
        assert out["comments"] == [{"text": "hi", "timestamp": "t"}]
        assert out["score"] == 0.0
        assert out["budget"] == "10"
        assert "criteria_json" not in out

    def test_legacy_plain_string_comment(self):
        assert services.parse_comments("needs design review") == [
            {"text": "needs design review", "timestamp": None}
        ]

    def test_legacy_list_of_strings(self):
        assert services.parse_comments('["a", "b"]') == [
            {"text": "a", "timestamp": None}, {"text": "b", "timestamp": None},
        ]


class TestCoerceBody:
    def test_converts_to_storage_types(self):
        clean = services.coerce_body({
            "weight": "4", "rank": 2.0, "prioritization": "", "in_plan": "true",
            "minor_release_candidate": None, "summary": 12, "budget": "5k",
        })
        assert clean == {
            "weight": 4, "rank": 2, "prioritization": None, "in_plan": True,
            "minor_release_candidate": False, "summary": "12", "budget": "5k",
        }

    @pytest.mark.parametrize("payload", [
        {"weight": "heavy"},
        {"rank": 2.5},
        {"in_plan": "maybe"},
        {"minor_release_candidate": 3},
        {"labels": ["a", "b"]},
    ])
    def test_rejects_mistyped_values(self, payload):
        with pytest.raises(ValidationError):
            services.coerce_body(payload)

    def test_failed_save_writes_nothing(self, session):
        with pytest.raises(ValidationError):
            services.save_requirement(session, {"key": "BAD-1", "summary": "x", "weight": "heavy"})
        assert session.get(Requirement, "BAD-1") is None


class TestNormalizeRanks:
    def _ranks(self, session):
        session.expire_all()
        return {r.key: r.rank for r in session.execute(select(Requirement)).scalars()}

    def test_orders_by_rank_then_score(self, session):
        session.add_all([
            Requirement(key="A", rank=5, score=10.0),
            Requirement(key="B", rank=5, score=20.0),
            Requirement(key="C", rank=EXCLUDED_RANK),
            Requirement(key="D", rank=2, score=5.0),
        ])
        session.commit()

        ordered = services.normalize_ranks(session)
        session.commit()

        assert [r.key for r in ordered] == ["D", "B", "A", "C"]
        assert self._ranks(session) == {"D": 0, "B": 1, "A": 2, "C": EXCLUDED_RANK}

    def test_none_rank_sorts_as_zero(self, session):
        session.add_all([Requirement(key="A", rank=1, score=1.0), Requirement(key="B", rank=None, score=1.0)])
        session.commit()
        services.normalize_ranks(session)
        session.commit()
        assert self._ranks(session) == {"B": 0, "A": 1}

    def test_idempotent(self, seeded):
        services.normalize_ranks(seeded)
        seeded.commit()
        first = self._ranks(seeded)
        services.normalize_ranks(seeded)
        seeded.commit()
        assert self._ranks(seeded) == first

    def test_update_rank_does_not_renumber(self, seeded):
        services.update_rank(seeded, "PROJ-1", 1)
        seeded.commit()
        assert self._ranks(seeded) == {"PROJ-1": 1, "PROJ-2": 1, "PROJ-3": EXCLUDED_RANK}

    def test_update_rank_unknown_key(self, session):
        with pytest.raises(NotFoundError):
            services.update_rank(session, "NOPE", 1)


class TestRequirements:
    def test_list_sorted_by_rank(self, seeded):
        assert [i["key"] for i in services.list_requirements(seeded)] == ["PROJ-2", "PROJ-1", "PROJ-3"]

    def test_list_search_and_status(self, seeded):
        assert [i["key"] for i in services.list_requirements(seeded, search="login")] == ["PROJ-1"]
        keys = [i["key"] for i in services.list_requirements(seeded, status="open")]
        assert sorted(keys) == ["PROJ-1", "PROJ-3"]

    def test_list_sorted_by_score_desc(self, seeded):
        items = services.list_requirements(seeded, sort_by="score", sort_dir="desc")
        assert [i["key"] for i in items] == ["PROJ-2", "PROJ-1", "PROJ-3"]

    def test_get_missing(self, session):
        with pytest.raises(NotFoundError):
            services.get_requirement(session, "NOPE")

    def test_save_creates_and_scores(self, session):
        saved = services.save_requirement(session, {
            "key": "NEW-1", "summary": "Fresh", "criteria": {"tech_debt": 3}, "unknown_field": "x",
        })
        assert saved["summary"] == "Fresh"
        assert saved["criteria"] == {"tech_debt": 3.0}
        assert saved["score"] == 3.0
        assert "unknown_field" not in saved

    def test_save_updates_existing(self, seeded):
        saved = services.save_requirement(seeded, {"key": "PROJ-1", "summary": "Login page v2"})
        assert saved["summary"] == "Login page v2"
        assert saved["status"] == "Open"

    def test_save_requires_key(self, session):
        with pytest.raises(ValidationError):
            services.save_requirement(session, {"summary": "no key"})

    def test_delete(self, seeded):
        services.delete_requirement(seeded, "PROJ-3")
        with pytest.raises(NotFoundError):
            services.get_requirement(seeded, "PROJ-3")
        with pytest.raises(NotFoundError):
            services.delete_requirement(seeded, "PROJ-3")


class TestComments:
    def test_appends_timestamped_entries(self, seeded):
        services.add_comment(seeded, "PROJ-1", "first")
        seeded.commit()
        comments = services.add_comment(seeded, "PROJ-1", "  second  ")
        seeded.commit()
        assert [c["text"] for c in comments] == ["first", "second"]
        assert all(c["timestamp"] for c in comments)
        assert services.get_requirement(seeded, "PROJ-1")["comments"] == comments

    def test_appends_to_legacy_string(self, seeded):
        seeded.get(Requirement, "PROJ-2").comments_json = "old note"
        seeded.commit()
        comments = services.add_comment(seeded, "PROJ-2", "new note")
        assert [c["text"] for c in comments] == ["old note", "new note"]

    def test_blank_text_rejected(self, seeded):
        with pytest.raises(ValidationError):
            services.add_comment(seeded, "PROJ-1", "   ")


class TestCriteria:
    def test_list_reports_total_weight(self, session):
        result = services.list_criteria(session)
        assert len(result["items"]) == 4
        assert result["total_weight"] == 100

    def test_save_recomputes_scores(self, seeded):
        services.save_criterion(seeded, {"id": "move_the_needle", "name": "Move the Needle",
                                         "weight": 0, "scale_min": 1, "scale_max": 5})
        seeded.expire_all()
        assert seeded.get(Requirement, "PROJ-2").score == 5.0

    def test_save_rejects_inverted_scale(self, session):
        with pytest.raises(ValidationError):
            services.save_criterion(session, {"id": "x", "name": "X", "weight": 1, "scale_min": 5, "scale_max": 1})

    def test_delete_and_reset(self, session):
        services.delete_criterion(session, "tech_debt")
        assert session.get(Criterion, "tech_debt") is None
        with pytest.raises(NotFoundError):
            services.delete_criterion(session, "tech_debt")

        restored = services.reset_criteria(session)
        assert {c["id"] for c in restored} == {
            "customer_retention", "move_the_needle", "strategic_alignment", "tech_debt",
        }


class TestSquadsAndPlan:
    def test_squad_crud(self, session):
        squad = services.save_squad(session, {"name": "Core", "capacity": 3})
        assert len(squad["id"]) == 32
        services.save_squad(session, {"id": squad["id"], "name": "Core Platform", "capacity": 4})
        assert services.list_squads(session) == [{"id": squad["id"], "name": "Core Platform", "capacity": 4}]
        services.delete_squad(session, squad["id"])
        assert services.list_squads(session) == []
        with pytest.raises(NotFoundError):
            services.delete_squad(session, squad["id"])

    def test_plan_summary(self, seeded):
        services.save_squad(seeded, {"name": "Core", "capacity": 3})
        services.update_plan(seeded, "PROJ-1", {"in_plan": True, "rough_estimate": "M", "teams": None})
        plan = services.plan_overview(seeded)
        assert [i["key"] for i in plan["items"]] == ["PROJ-2", "PROJ-1", "PROJ-3"]
        assert plan["summary"] == {"in_plan_count": 1, "rough_estimate_count": 1, "total_capacity": 3}

    def test_update_plan_unknown_key(self, session):
        with pytest.raises(NotFoundError):
            services.update_plan(session, "NOPE", {"in_plan": True})


class TestAnalytics:
    def test_aggregates(self, seeded):
        stats = services.compute_analytics(seeded)
        assert stats["total"] == 3
        assert stats["scored"] == 2
        assert stats["by_status"] == {"Open": 2, "Done": 1}
        assert stats["by_priority"] == {"High": 1, "Unknown": 2}
        assert stats["by_assignee"] == {"ana": 1, "Unassigned": 2}
        assert stats["by_label"] == {"auth": 1, "web": 1, "billing": 1}
        assert stats["by_customer"] == [
            {"customer": "Acme", "count": 2, "percent": 66.7},
            {"customer": "Globex", "count": 1, "percent": 33.3},
        ]
        assert stats["score_ranges"] == {"1-2": 0, "2-3": 0, "3-4": 1, "4-5": 1}
        assert stats["criteria_coverage"]["tech_debt"] == 66.7
        assert stats["criteria_coverage"]["move_the_needle"] == 33.3
        assert stats["criteria_coverage"]["customer_retention"] == 0.0

    def test_empty(self, session):
        stats = services.compute_analytics(session)
        assert stats["total"] == 0
        assert stats["by_customer"] == []
        assert set(stats["criteria_coverage"].values()) == {0.0}
