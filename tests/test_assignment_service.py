"""AssignmentService against a real (SQLite) database, one session at a time."""
import random
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select, update

from survey_quota.core.exceptions import (
    ConcurrencyConflictError,
    InvalidBirthDateError,
    SessionNotFoundError,
    SessionStateError,
    ValidationError,
)
from survey_quota.models.orm.allocation import ArticleORM
from survey_quota.models.orm.form import AssignmentStrategy
from survey_quota.models.orm.session import AnnotationSessionORM, UnitKind
from survey_quota.models.schemas.assignment import AssignmentRequestModel, ScreenOutReason
from survey_quota.models.schemas.session import (
    AnnotationProgressModel,
    DemographicsModel,
    SessionStartModel,
)
from survey_quota.repositories.allocation_repo import AllocationRepository
from survey_quota.services.assignment_service import AssignmentService
from survey_quota.services.form_service import FormService
from survey_quota.services.session_service import SessionService

DUTCH = {"ethnicity": "Nederlands"}
TURKISH = {"ethnicity": "Turks"}
UNMATCHED = {"ethnicity": "Klingon"}

CHILD_BIRTH_DATE = f"{date.today().year - 10}-01-01"
ADULT_BIRTH_DATE = f"{date.today().year - 40}-01-01"


def assign(db, form_id, token, demographics):
    service = AssignmentService(db, rng=random.Random(7))
    return service.assign(
        form_id, AssignmentRequestModel(session_token=token, demographics=demographics)
    )


def annotate(db, form_id, token, article_id):
    return AssignmentService(db).record_annotation(
        form_id, AnnotationProgressModel(session_token=token, article_id=article_id)
    )


def annotate_all(db, form_id, token, articles):
    for article in articles:
        annotate(db, form_id, token, article.id)


def counters(db, form_id, strategy=AssignmentStrategy.INDIVIDUAL):
    """short_id -> (quota_counts, reserved_counts)"""
    units = AllocationRepository(db).get_units(form_id, strategy)
    return {u.short_id: (u.quota_counts, u.reserved_counts) for u in units}


def total_reserved(db, form_id, group, strategy=AssignmentStrategy.INDIVIDUAL):
    return sum(reserved.get(group, 0) for _, reserved in counters(db, form_id, strategy).values())


def total_completed(db, form_id, group, strategy=AssignmentStrategy.INDIVIDUAL):
    return sum(quota.get(group, 0) for quota, _ in counters(db, form_id, strategy).values())


# --- Assignment ---


def test_assigns_individual_article_and_reserves_slot(db, make_form, start_session):
    form = make_form(short_ids=("a1", "a2"))
    session = start_session(form.form_id)

    result = assign(db, form.form_id, session.session_token, DUTCH)

    assert result.assigned
    assert not result.already_assigned
    assert result.demographic_group == "dutch"
    assert len(result.articles) == 1
    assert result.session.status == "annotating"
    assert result.session.assigned_unit.kind is UnitKind.INDIVIDUAL
    assert result.session.assigned_unit.ids == [result.articles[0].id]

    quota, reserved = counters(db, form.form_id)[result.articles[0].short_id]
    assert reserved == {"dutch": 1}
    assert quota == {}


def test_repeat_assign_returns_the_same_articles(db, make_form, start_session):
    form = make_form(short_ids=("a1", "a2", "a3"))
    token = start_session(form.form_id).session_token

    first = assign(db, form.form_id, token, DUTCH)
    # Different answers on the retry must not reclassify the participant
    second = assign(db, form.form_id, token, TURKISH)

    assert second.assigned
    assert second.already_assigned
    assert [a.id for a in second.articles] == [a.id for a in first.articles]
    assert second.demographic_group == "dutch"
    assert total_reserved(db, form.form_id, "dutch") == 1
    assert total_reserved(db, form.form_id, "minority") == 0


def test_missing_token_is_a_validation_error(db, make_form):
    form = make_form()
    with pytest.raises(ValidationError):
        assign(db, form.form_id, "  ", DUTCH)
    with pytest.raises(ValidationError):
        assign(db, form.form_id, None, DUTCH)


def test_unknown_or_foreign_session_is_not_found(db, make_form, start_session):
    form = make_form()
    other_form = make_form()
    foreign_token = start_session(other_form.form_id).session_token

    with pytest.raises(SessionNotFoundError):
        assign(db, form.form_id, "no-such-token", DUTCH)
    with pytest.raises(SessionNotFoundError):
        assign(db, form.form_id, foreign_token, DUTCH)


# --- Screen-outs ---


def test_no_matching_group_is_screened_out_and_sticks(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token

    result = assign(db, form.form_id, token, UNMATCHED)

    assert not result.assigned
    assert result.reason is ScreenOutReason.NO_MATCHING_GROUP
    assert result.message
    assert result.session.status == "screened_out"

    retry = assign(db, form.form_id, token, DUTCH)
    assert not retry.assigned
    assert retry.reason is ScreenOutReason.NO_MATCHING_GROUP
    assert counters(db, form.form_id) == {"a1": ({}, {})}


def test_under_age_takes_precedence_over_classification(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token

    result = assign(db, form.form_id, token, {**UNMATCHED, "birthDate": CHILD_BIRTH_DATE})

    assert result.reason is ScreenOutReason.UNDER_AGE
    assert result.session.demographic_group is None


def test_under_age_takes_precedence_over_quota_full(db, make_form, start_session):
    form = make_form(short_ids=())
    token = start_session(form.form_id).session_token

    result = assign(db, form.form_id, token, {**DUTCH, "birthDate": CHILD_BIRTH_DATE})

    assert result.reason is ScreenOutReason.UNDER_AGE


def test_adult_passes_the_age_gate(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token

    assert assign(db, form.form_id, token, {**DUTCH, "birthDate": ADULT_BIRTH_DATE}).assigned


def test_form_minimum_age_is_used(db, make_form, start_session):
    form = make_form(minimum_age=8)
    token = start_session(form.form_id).session_token

    assert assign(db, form.form_id, token, {**DUTCH, "birthDate": CHILD_BIRTH_DATE}).assigned


def test_invalid_birth_date_persists_nothing(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token

    with pytest.raises(InvalidBirthDateError):
        assign(db, form.form_id, token, {**DUTCH, "birthDate": "sometime in the eighties"})

    assert SessionService(db).get_session(form.form_id, token).status == "started"
    assert counters(db, form.form_id) == {"a1": ({}, {})}


def test_quota_full_leaves_counters_untouched(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    first = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)
    before = counters(db, form.form_id)

    second = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    assert first.assigned
    assert not second.assigned
    assert second.reason is ScreenOutReason.QUOTA_FULL
    assert second.available_count == 0
    assert second.required == 1
    assert second.demographic_group == "dutch"
    assert second.session.status == "screened_out"
    assert counters(db, form.form_id) == before


def test_quota_is_tracked_per_group(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    # dutch is full on a1, minority (target 2) is not
    result = assign(db, form.form_id, start_session(form.form_id).session_token, TURKISH)

    assert result.assigned
    assert counters(db, form.form_id)["a1"][1] == {"dutch": 1, "minority": 1}


# --- Multi-article and job-set units ---


def test_individual_strategy_assigns_articles_per_session_distinct_articles(
    db, make_form, start_session
):
    form = make_form(short_ids=("a1", "a2", "a3"), articles_per_session=2)
    result = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    assert result.assigned
    assert len({a.id for a in result.articles}) == 2
    assert result.session.required_article_count == 2
    assert total_reserved(db, form.form_id, "dutch") == 2


def test_individual_strategy_needs_enough_articles(db, make_form, start_session):
    form = make_form(short_ids=("a1",), articles_per_session=2)
    result = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    assert result.reason is ScreenOutReason.QUOTA_FULL
    assert result.available_count == 1
    assert result.required == 2
    assert counters(db, form.form_id) == {"a1": ({}, {})}


def test_job_set_is_assigned_whole(db, make_form, start_session):
    form = make_form(
        short_ids=("a1", "a2", "a3", "a4", "a5", "a6"),
        strategy=AssignmentStrategy.JOB_SET,
        articles_per_session=3,
    )
    result = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    assert result.assigned
    assert [a.short_id for a in result.articles] in (["a1", "a2", "a3"], ["a4", "a5", "a6"])
    assert result.session.assigned_unit.kind is UnitKind.JOB_SET
    assert result.session.required_article_count == 3

    job_sets = counters(db, form.form_id, AssignmentStrategy.JOB_SET)
    assert sorted(job_sets) == ["jobset-1", "jobset-2"]
    assert sum(reserved.get("dutch", 0) for _, reserved in job_sets.values()) == 1
    # Member articles carry no counters of their own under JOB_SET
    for article in db.scalars(select(ArticleORM)).all():
        assert not article.quota_counts and not article.reserved_counts


def test_job_set_runs_out_as_a_unit(db, make_form, start_session):
    form = make_form(
        short_ids=("a1", "a2"), strategy=AssignmentStrategy.JOB_SET, articles_per_session=2
    )
    first = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)
    second = assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    assert len(first.articles) == 2
    assert second.reason is ScreenOutReason.QUOTA_FULL
    assert second.available_count == 0
    assert second.required == 1


def test_resumed_job_set_keeps_article_order(db, make_form, start_session):
    form = make_form(
        short_ids=("c", "a", "b"), strategy=AssignmentStrategy.JOB_SET, articles_per_session=3
    )
    token = start_session(form.form_id).session_token

    assign(db, form.form_id, token, DUTCH)
    resumed = assign(db, form.form_id, token, DUTCH)

    assert resumed.already_assigned
    assert [a.short_id for a in resumed.articles] == ["c", "a", "b"]


# --- Annotation progress ---


def test_annotation_counts_each_article_once(db, make_form, start_session):
    form = make_form(short_ids=("a1", "a2", "a3"), articles_per_session=2)
    token = start_session(form.form_id).session_token
    first, second = assign(db, form.form_id, token, DUTCH).articles

    progress = annotate(db, form.form_id, token, first.id)
    assert progress.articles_completed == 1
    assert progress.required_article_count == 2
    assert not progress.already_annotated

    repeat = annotate(db, form.form_id, token, first.id)
    assert repeat.already_annotated
    assert repeat.articles_completed == 1

    assert annotate(db, form.form_id, token, second.id).articles_completed == 2


def test_annotation_must_name_an_article_of_the_unit(db, make_form, start_session):
    form = make_form(short_ids=("a1", "a2"))
    token = start_session(form.form_id).session_token
    (held,) = assign(db, form.form_id, token, DUTCH).articles
    other = db.scalars(select(ArticleORM).where(ArticleORM.article_id != held.id)).one()

    with pytest.raises(ValidationError):
        annotate(db, form.form_id, token, other.article_id)
    with pytest.raises(ValidationError):
        annotate(db, form.form_id, token, None)
    assert SessionService(db).get_session(form.form_id, token).articles_completed == 0


def test_annotation_accepts_job_set_members_only(db, make_form, start_session):
    form = make_form(
        short_ids=("a1", "a2", "a3", "a4"), strategy=AssignmentStrategy.JOB_SET, articles_per_session=2
    )
    token = start_session(form.form_id).session_token
    articles = assign(db, form.form_id, token, DUTCH).articles
    held_ids = {a.id for a in articles}
    outsider = db.scalars(select(ArticleORM).where(ArticleORM.article_id.not_in(held_ids))).first()

    with pytest.raises(ValidationError):
        annotate(db, form.form_id, token, outsider.article_id)
    annotate_all(db, form.form_id, token, articles)
    assert SessionService(db).get_session(form.form_id, token).articles_completed == 2


def test_annotation_needs_an_annotating_session(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token

    with pytest.raises(SessionStateError):
        annotate(db, form.form_id, token, "a1")


def test_annotation_keeps_the_session_alive(db, make_form, start_session):
    form = make_form(short_ids=("a1",), session_timeout_mins=60)
    token = start_session(form.form_id).session_token
    (article,) = assign(db, form.form_id, token, DUTCH).articles
    db.execute(
        update(AnnotationSessionORM)
        .where(AnnotationSessionORM.session_token == token)
        .values(last_active_at=datetime.utcnow() - timedelta(hours=2))
    )
    db.commit()

    annotate(db, form.form_id, token, article.id)
    sweep = AssignmentService(db).expire_stale_sessions(form.form_id)

    assert sweep.expired == 0
    assert SessionService(db).get_session(form.form_id, token).status == "annotating"


# --- Completion ---


def test_completion_turns_reservation_into_count(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    annotate_all(db, form.form_id, token, assign(db, form.form_id, token, DUTCH).articles)

    done = AssignmentService(db).complete_session(form.form_id, token)

    assert done.success
    assert not done.already_completed
    assert done.articles_completed == 1
    assert done.demographic_group == "dutch"
    assert total_completed(db, form.form_id, "dutch") == 1
    assert total_reserved(db, form.form_id, "dutch") == 0


def test_completion_needs_every_article_annotated(db, make_form, start_session):
    form = make_form(short_ids=("a1", "a2"), articles_per_session=2)
    token = start_session(form.form_id).session_token
    first, second = assign(db, form.form_id, token, DUTCH).articles
    service = AssignmentService(db)

    with pytest.raises(ValidationError):
        service.complete_session(form.form_id, token)
    annotate(db, form.form_id, token, first.id)
    with pytest.raises(ValidationError):
        service.complete_session(form.form_id, token)

    assert total_reserved(db, form.form_id, "dutch") == 2
    assert total_completed(db, form.form_id, "dutch") == 0

    annotate(db, form.form_id, token, second.id)
    assert service.complete_session(form.form_id, token).articles_completed == 2


def test_completion_is_idempotent(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    annotate_all(db, form.form_id, token, assign(db, form.form_id, token, DUTCH).articles)
    service = AssignmentService(db)

    service.complete_session(form.form_id, token)
    again = service.complete_session(form.form_id, token)

    assert again.already_completed
    assert total_completed(db, form.form_id, "dutch") == 1


def test_completion_of_job_set_counts_once(db, make_form, start_session):
    form = make_form(
        short_ids=("a1", "a2"), strategy=AssignmentStrategy.JOB_SET, articles_per_session=2
    )
    token = start_session(form.form_id).session_token
    annotate_all(db, form.form_id, token, assign(db, form.form_id, token, TURKISH).articles)

    done = AssignmentService(db).complete_session(form.form_id, token)

    assert done.articles_completed == 2
    assert counters(db, form.form_id, AssignmentStrategy.JOB_SET)["jobset-1"][0] == {"minority": 1}


def test_completion_requires_an_assignment(db, make_form, start_session):
    form = make_form()
    started = start_session(form.form_id).session_token
    screened = start_session(form.form_id).session_token
    assign(db, form.form_id, screened, UNMATCHED)
    service = AssignmentService(db)

    with pytest.raises(SessionStateError):
        service.complete_session(form.form_id, started)
    with pytest.raises(SessionStateError):
        service.complete_session(form.form_id, screened)


def test_completion_after_target_lowered_does_not_overshoot(
    db, make_form, start_session, quota_settings
):
    form = make_form(short_ids=("a1",), quota_settings=quota_settings(dutch=1))
    token = start_session(form.form_id).session_token
    annotate_all(db, form.form_id, token, assign(db, form.form_id, token, DUTCH).articles)

    FormService(db).update_quota_settings(
        form.form_id, quota_settings(dutch=0).model_dump(by_alias=True)
    )
    AssignmentService(db).complete_session(form.form_id, token)

    assert total_completed(db, form.form_id, "dutch") == 0
    assert total_reserved(db, form.form_id, "dutch") == 0


def lose_races(service, count):
    """Makes the next count counter swaps of service fail as if another writer won."""
    real_swap = service.allocation_repo._swap
    lost = []

    def swap(*args):
        if len(lost) < count:
            lost.append(args)
            return False
        return real_swap(*args)

    service.allocation_repo._swap = swap
    return lost


def test_completion_retries_once_after_losing_every_race(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    annotate_all(db, form.form_id, token, assign(db, form.form_id, token, DUTCH).articles)
    service = AssignmentService(db, cas_attempts=2)
    lost = lose_races(service, 2)

    done = service.complete_session(form.form_id, token)

    assert len(lost) == 2
    assert done.success and not done.already_completed
    assert total_completed(db, form.form_id, "dutch") == 1
    assert total_reserved(db, form.form_id, "dutch") == 0


def test_completion_gives_up_after_the_retry(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    annotate_all(db, form.form_id, token, assign(db, form.form_id, token, DUTCH).articles)
    service = AssignmentService(db, cas_attempts=2)
    lose_races(service, 4)

    with pytest.raises(ConcurrencyConflictError):
        service.complete_session(form.form_id, token)

    assert SessionService(db).get_session(form.form_id, token).status == "annotating"
    assert total_reserved(db, form.form_id, "dutch") == 1


# --- Expiry ---


def test_expiry_releases_the_slot(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    stale = start_session(form.form_id).session_token
    (held,) = assign(db, form.form_id, stale, DUTCH).articles

    sweep = AssignmentService(db).expire_stale_sessions(
        form.form_id, now=datetime.utcnow() + timedelta(hours=2)
    )

    assert sweep.expired == 1
    assert sweep.released_reservations == {"dutch": 1}
    assert total_reserved(db, form.form_id, "dutch") == 0

    expired = SessionService(db).get_session(form.form_id, stale)
    assert expired.status == "expired"
    assert expired.assigned_unit is None
    row = db.scalars(select(AnnotationSessionORM).where(AnnotationSessionORM.session_token == stale)).one()
    assert row.assigned_article_ids is None
    assert row.released_unit_ref == {"kind": "individual", "ids": [held.id]}

    # The freed slot goes to the next participant
    assert assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH).assigned


def test_expiry_skips_active_sessions(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    assign(db, form.form_id, start_session(form.form_id).session_token, DUTCH)

    sweep = AssignmentService(db).expire_stale_sessions(form.form_id)

    assert sweep.expired == 0
    assert total_reserved(db, form.form_id, "dutch") == 1


def test_expired_session_is_terminal(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    (article,) = assign(db, form.form_id, token, DUTCH).articles
    service = AssignmentService(db)
    service.expire_stale_sessions(form.form_id, now=datetime.utcnow() + timedelta(hours=2))

    with pytest.raises(SessionStateError):
        service.assign(form.form_id, AssignmentRequestModel(session_token=token, demographics=DUTCH))
    with pytest.raises(SessionStateError):
        annotate(db, form.form_id, token, article.id)
    with pytest.raises(SessionStateError):
        service.complete_session(form.form_id, token)

    session = SessionService(db).get_session(form.form_id, token)
    assert session.status == "expired"
    assert session.assigned_unit is None


# --- Session lifecycle ---


def test_start_or_resume(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    service = SessionService(db)

    resumed = service.start_or_resume(form.form_id, SessionStartModel(session_token=token))
    assert resumed.resumed
    assert resumed.session.session_token == token

    assign(db, form.form_id, token, DUTCH)
    AssignmentService(db).expire_stale_sessions(
        form.form_id, now=datetime.utcnow() + timedelta(hours=2)
    )

    restarted = service.start_or_resume(form.form_id, SessionStartModel(session_token=token))
    assert not restarted.resumed
    assert restarted.was_expired
    assert restarted.session.session_token != token
    assert restarted.session.status == "started"


def test_new_session_copies_articles_per_session(db, make_form, start_session):
    form = make_form(short_ids=(), articles_per_session=4)
    session = start_session(form.form_id)

    assert session.required_article_count == 4
    assert session.status == "started"
    assert session.assigned_unit is None


def test_decline_ends_the_session(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token
    service = SessionService(db)

    declined = service.decline(form.form_id, token)
    assert declined.session.status == "consent_declined"
    assert service.decline(form.form_id, token).success

    with pytest.raises(SessionStateError):
        assign(db, form.form_id, token, DUTCH)


def test_decline_after_assignment_is_refused(db, make_form, start_session):
    form = make_form()
    token = start_session(form.form_id).session_token
    assign(db, form.form_id, token, DUTCH)

    with pytest.raises(SessionStateError):
        SessionService(db).decline(form.form_id, token)


def test_demographics_step_is_used_by_assignment(db, make_form, start_session):
    form = make_form(short_ids=("a1",))
    token = start_session(form.form_id).session_token
    service = SessionService(db)

    saved = service.save_demographics(form.form_id, DemographicsModel(session_token=token, demographics=TURKISH))
    assert saved.status == "demographics"

    result = assign(db, form.form_id, token, {})
    assert result.assigned
    assert result.demographic_group == "minority"

    with pytest.raises(SessionStateError):
        service.save_demographics(form.form_id, DemographicsModel(session_token=token, demographics=DUTCH))
