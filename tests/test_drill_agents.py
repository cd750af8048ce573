"""Tests for the planner/summarizer post-processing helpers."""

from __future__ import annotations

from agents.drill_planner import DrillPlanDraft, PhaseDraft, normalize_phases, slugify
from agents.drill_summarizer import align_ratings
from models.drill import CompletionData, DrillSession, PhaseRating


def test_slugify():
    assert slugify("Light-Dependent Reactions!") == "light-dependent-reactions"
    assert slugify("  ") == ""


class TestNormalizePhases:
    def test_ids_slugified(self):
        draft = DrillPlanDraft(phases=[PhaseDraft(id="Light Reactions", title="Light Reactions")])
        assert [p.id for p in normalize_phases(draft)] == ["light-reactions"]

    def test_falls_back_to_title_then_position(self):
        draft = DrillPlanDraft(phases=[
            PhaseDraft(id="!!!", title="Calvin Cycle"),
            PhaseDraft(id="", title=""),
        ])
        phases = normalize_phases(draft)
        assert [p.id for p in phases] == ["calvin-cycle", "phase-2"]
        assert phases[1].title == "Phase 2"

    def test_duplicates_suffixed(self):
        draft = DrillPlanDraft(phases=[
            PhaseDraft(id="review", title="Review"),
            PhaseDraft(id="review", title="Review again"),
            PhaseDraft(id="review", title="Final review"),
        ])
        assert [p.id for p in normalize_phases(draft)] == ["review", "review-2", "review-3"]


class TestAlignRatings:
    def test_one_rating_per_phase_in_plan_order(self, sample_plan):
        session = DrillSession(topic_id="t", owner_id="u", drill_plan=sample_plan)
        completion = CompletionData(
            phases_ratings=[
                PhaseRating(phase_id="phase-3", rating="weak"),
                PhaseRating(phase_id="bogus", rating="strong"),
                PhaseRating(phase_id="phase-1", rating="so-so"),
            ],
            next_focus_areas=["ATP", "Stroma"],
        )
        aligned = align_ratings(completion, session)
        assert [(r.phase_id, r.rating) for r in aligned.phases_ratings] == [
            ("phase-1", "so-so"),
            ("phase-2", "incomplete"),
            ("phase-3", "weak"),
        ]
        assert aligned.next_focus_areas == ["ATP", "Stroma"]

    def test_no_plan_drops_ratings(self):
        session = DrillSession(topic_id="t", owner_id="u")
        completion = CompletionData(
            phases_ratings=[PhaseRating(phase_id="phase-1", rating="strong")],
            next_focus_areas=["ATP", "Stroma"],
        )
        assert align_ratings(completion, session).phases_ratings == []
