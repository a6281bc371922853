"""Application status transitions outside the decision path."""

from datetime import timedelta

import pytest

from conftest import CANDIDATE_PAYLOAD, JUSTIFICATION, TODAY
from credportal.domain.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    ValidationFailedError,
)
from credportal.domain.session import SessionContext
from credportal.domain.states import ApplicationStatus


class TestDraftAndSubmit:
    def test_only_candidates_open_applications(self, services, analyst):
        with pytest.raises(NotAuthorizedError):
            services.applications.create_draft(analyst, "program-1", CANDIDATE_PAYLOAD)

    def test_draft_starts_clean(self, services, candidate):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        assert row["status"] == "draft"
        assert row["candidate_id"] == "cand-1"
        assert row["analysis_cycle"] == 0
        assert row["submitted_at"] is None

    def test_submit_stamps_time_and_emits(self, services, candidate, events):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        submitted = services.applications.submit(row["id"], candidate)
        assert submitted["status"] == "submitted"
        assert submitted["submitted_at"]
        assert [e["event_type"] for e in events] == ["application.created", "application.submitted"]

    def test_other_candidate_cannot_submit(self, services, repo, candidate):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        repo.grant_role("cand-2", "candidate")
        other = SessionContext.of("cand-2", ["candidate"])
        with pytest.raises(NotAuthorizedError):
            services.applications.submit(row["id"], other)
        assert repo.get_application(row["id"])["status"] == "draft"

    def test_submit_twice_is_invalid_transition(self, services, candidate):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        services.applications.submit(row["id"], candidate)
        with pytest.raises(InvalidTransitionError):
            services.applications.submit(row["id"], candidate)

    def test_unknown_application(self, services, candidate):
        with pytest.raises(NotFoundError):
            services.applications.submit("missing", candidate)

    def test_analysts_are_told_about_new_submissions(self, services, repo, candidate, analyst, manager):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        services.applications.submit(row["id"], candidate)
        for user_id in ("analyst-1", "manager-1"):
            titles = [n["title"] for n in repo.list_notifications(user_id)]
            assert titles == ["New application"]
        assert repo.list_notifications("cand-1") == []


class TestAnalysis:
    def test_start_analysis_bumps_cycle(self, make_application):
        app = make_application()
        assert app["status"] == "under_analysis"
        assert app["analysis_cycle"] == 1

    def test_candidate_cannot_start_analysis(self, services, candidate):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        services.applications.submit(row["id"], candidate)
        with pytest.raises(NotAuthorizedError):
            services.applications.start_analysis(row["id"], candidate)

    def test_decision_statuses_need_the_recorder(self, services, analyst, make_application):
        app = make_application()
        with pytest.raises(ValidationFailedError):
            services.applications.transition(app["id"], ApplicationStatus.APPROVED, analyst)

    def test_lost_race_is_invalid_state(self, services, repo, candidate, analyst, monkeypatch):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        services.applications.submit(row["id"], candidate)
        monkeypatch.setattr(repo, "update_application_status", lambda *args, **kwargs: None)
        with pytest.raises(InvalidStateError):
            services.applications.start_analysis(row["id"], analyst)

    def test_resubmission_opens_new_cycle(self, services, candidate, analyst, make_application, events):
        app = make_application()
        services.decisions.record_decision(
            app["id"],
            analyst,
            "pending_correction",
            JUSTIFICATION,
            correction_deadline=TODAY + timedelta(days=10),
        )
        resubmitted = services.applications.resubmit(app["id"], candidate)
        assert resubmitted["status"] == "under_analysis"
        assert resubmitted["analysis_cycle"] == 2
        assert events[-1]["event_type"] == "application.resubmitted"
        assert events[-1]["payload"]["analysis_cycle"] == 2


class TestCachedReads:
    def test_view_is_cached_until_the_application_changes(self, services, candidate):
        row = services.applications.create_draft(candidate, "program-1", CANDIDATE_PAYLOAD)
        first = services.applications.get_application(row["id"])
        assert first["status"] == "draft"
        assert services.cache.cached_views("application", row["id"]) == {"application"}

        services.applications.submit(row["id"], candidate)
        assert services.cache.cached_views("application", row["id"]) == set()
        assert services.applications.get_application(row["id"])["status"] == "submitted"

    def test_missing_application_is_not_cached(self, services):
        with pytest.raises(NotFoundError):
            services.applications.get_application("missing")
        assert services.cache.cached_views("application", "missing") == set()
