"""Tests for the IGMA systemic rule engine."""
from __future__ import annotations

from datetime import date

import pytest

from sistur.igma import (
    EDU_AO,
    EDU_OE,
    EDU_RA,
    MARKETING,
    IGMAInput,
    PillarContext,
    add_months,
    contexts_from_scores,
    interpret_systemic_rules,
)
from sistur.scoring import ENTREGA, ESTRUTURAL, GESTAO

TODAY = date(2024, 3, 15)


def _run(current: dict, previous: dict | None = None, intersectoral: int = 0, when: date = TODAY):
    return interpret_systemic_rules(IGMAInput(
        pillar_scores=contexts_from_scores(current),
        previous_pillar_scores=contexts_from_scores(previous) if previous is not None else None,
        assessment_date=when,
        intersectoral_indicator_count=intersectoral,
    ))


class TestEndToEnd:
    def test_ra_critical_scenario(self):
        out = _run({"RA": 0.20, "OE": 0.80, "AO": 0.75})
        assert out.flags["RA_LIMITATION"] is True
        assert out.flags["GOVERNANCE_BLOCK"] is False
        assert out.flags["MARKETING_BLOCKED"] is True
        assert out.flags["EXTERNALITY_WARNING"] is False
        assert out.interpretation_type == ESTRUTURAL
        assert out.critical_pillar == "RA"
        assert out.next_review_months == 6
        assert out.next_review_date == date(2024, 9, 15)
        assert out.blocked_actions == [EDU_OE, MARKETING]
        assert out.allowed_actions == {EDU_RA: True, EDU_AO: False, EDU_OE: False, MARKETING: False}

    def test_all_adequate(self):
        out = _run({"RA": 0.9, "OE": 0.8, "AO": 0.7})
        assert out.active_flags == []
        assert out.blocked_actions == []
        assert out.ui_messages == []
        assert out.next_review_months == 18
        assert out.interpretation_type == GESTAO
        assert out.critical_pillar == "AO"


class TestBlockingRules:
    def test_ra_and_ao_critical_block_each_action_once(self):
        out = _run({"RA": 0.1, "OE": 0.9, "AO": 0.2})
        assert out.blocked_actions.count(EDU_OE) == 1
        assert out.blocked_actions.count(MARKETING) == 1
        assert out.flags["GOVERNANCE_BLOCK"] is True
        assert [m.flag for m in out.ui_messages] == ["RA_LIMITATION", "GOVERNANCE_BLOCK", "MARKETING_BLOCKED"]

    def test_governance_block_alone(self):
        out = _run({"RA": 0.5, "OE": 0.5, "AO": 0.1})
        assert out.flags["RA_LIMITATION"] is False
        assert out.allowed_actions[EDU_AO] is True
        assert out.allowed_actions[EDU_OE] is False
        assert out.blocked_actions == [EDU_OE, MARKETING]
        assert out.interpretation_type == GESTAO

    def test_oe_critical_blocks_nothing(self):
        out = _run({"RA": 0.5, "OE": 0.1, "AO": 0.5})
        assert out.blocked_actions == []
        assert out.interpretation_type == ENTREGA
        assert out.next_review_months == 9


class TestExternality:
    def test_requires_previous_snapshot(self):
        out = _run({"RA": 0.4, "OE": 0.9, "AO": 0.7})
        assert out.flags["EXTERNALITY_WARNING"] is False
        assert out.trends == {}

    def test_oe_up_ra_down(self):
        out = _run({"RA": 0.4, "OE": 0.9, "AO": 0.7}, previous={"RA": 0.5, "OE": 0.8, "AO": 0.7})
        assert out.flags["EXTERNALITY_WARNING"] is True
        assert out.trends == {"RA": "DOWN", "OE": "UP", "AO": "STABLE"}
        assert out.ui_messages[0].type == "warning"
        assert out.blocked_actions == []

    def test_previous_missing_pillar(self):
        out = _run({"RA": 0.4, "OE": 0.9}, previous={"OE": 0.5})
        assert out.flags["EXTERNALITY_WARNING"] is False
        assert out.trends == {"OE": "UP"}


class TestReview:
    @pytest.mark.parametrize("scores, months", [
        ({"RA": 0.1, "OE": 0.1, "AO": 0.1}, 6),
        ({"RA": 0.9, "OE": 0.1, "AO": 0.1}, 12),
        ({"RA": 0.9, "OE": 0.1, "AO": 0.9}, 9),
        ({"RA": 0.5, "OE": 0.9, "AO": 0.9}, 12),
        ({"RA": 0.9, "OE": 0.9, "AO": 0.9}, 18),
    ])
    def test_precedence(self, scores, months):
        assert _run(scores).next_review_months == months

    def test_month_end_clamping(self):
        assert add_months(date(2024, 8, 31), 6) == date(2025, 2, 28)
        assert add_months(date(2023, 8, 31), 6) == date(2024, 2, 29)
        assert add_months(date(2024, 12, 1), 18) == date(2026, 6, 1)


class TestIncompleteInput:
    def test_missing_pillar_never_critical(self):
        out = _run({"OE": 0.9})
        assert out.flags["RA_LIMITATION"] is False
        assert out.flags["MARKETING_BLOCKED"] is False
        assert out.critical_pillar == "OE"

    def test_empty_snapshot(self):
        out = _run({})
        assert out.critical_pillar is None
        assert out.next_review_months == 18

    def test_scoreless_context_ignored(self):
        out = interpret_systemic_rules(IGMAInput(
            pillar_scores=[PillarContext("RA", None), PillarContext("AO", 0.8)],
            previous_pillar_scores=None,
            assessment_date=TODAY,
        ))
        assert out.critical_pillar == "AO"
        assert out.flags["RA_LIMITATION"] is False

    def test_critical_pillar_tie_keeps_input_order(self):
        out = interpret_systemic_rules(IGMAInput(
            pillar_scores=[PillarContext("OE", 0.3), PillarContext("RA", 0.3)],
            previous_pillar_scores=None,
            assessment_date=TODAY,
        ))
        assert out.critical_pillar == "OE"

    def test_severity_derived_from_score(self):
        assert PillarContext("RA", 0.33).severity == "CRITICO"
        assert PillarContext("RA", None).severity is None


class TestMessages:
    def test_intersectoral_is_advisory(self):
        out = _run({"RA": 0.9, "OE": 0.9, "AO": 0.9}, intersectoral=3)
        assert out.flags["INTERSECTORAL_DEPENDENCY"] is True
        assert out.blocked_actions == []
        [msg] = out.ui_messages
        assert msg.type == "info"
        assert msg.message.startswith("3 indicador(es)")

    def test_to_dict_is_json_ready(self):
        data = _run({"RA": 0.2, "OE": 0.8, "AO": 0.75}).to_dict()
        assert data["next_review_date"] == "2024-09-15"
        assert data["ui_messages"][0]["flag"] == "RA_LIMITATION"
        assert data["critical_pillar"] == "RA"
