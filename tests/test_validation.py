"""Division completeness checks and the one-way validation gate."""

import pytest

from app import (
    db, DivisionValidation, Pageant, submit_score, compute_validation_status, validate_division,
    ValidationPreconditionFailed, InvalidRequest
)

JUDGES = ('Judge 1', 'Judge 2', 'Judge 3')


def score_all(pageant, contestant, category, sheet, judges=JUDGES):
    for judge in judges:
        submit_score(pageant.id, contestant.id, judge, category, sheet(category, 10))


def test_missing_score_blocks_validation(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava', number='101')
    bella = make_contestant(pageant, 'Bella', number='102')
    score_all(pageant, ava, 'beauty', sheet)
    score_all(pageant, bella, 'beauty', sheet, judges=JUDGES[:2])

    status = compute_validation_status(pageant.id, 'Teen')

    assert status['is_valid'] is False
    assert [d['contestant_id'] for d in status['deficits']] == [bella.id]
    deficit = status['deficits'][0]
    assert deficit['missing'] == {'beauty': 1}
    assert deficit['required'] == 3
    assert deficit['actual'] == 2
    assert deficit['message'] == 'Missing 1 score for #102 Bella'

    with pytest.raises(ValidationPreconditionFailed) as excinfo:
        validate_division(pageant.id, 'Teen')
    assert excinfo.value.to_dict()['deficits'] == status['deficits']
    assert DivisionValidation.query.count() == 0


def test_complete_division_validates_once(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava')
    score_all(pageant, ava, 'beauty', sheet)

    assert compute_validation_status(pageant.id, 'Teen')['is_valid'] is True
    assert validate_division(pageant.id, 'Teen') is True
    assert validate_division(pageant.id, 'Teen') is False

    assert db.session.get(Pageant, pageant.id).validated_divisions == ['Teen']
    assert DivisionValidation.query.filter_by(pageant_id=pageant.id).count() == 1
    assert compute_validation_status(pageant.id, 'Teen')['validated'] is True


def test_status_reflects_new_scores_immediately(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava')
    score_all(pageant, ava, 'beauty', sheet, judges=JUDGES[:2])
    assert compute_validation_status(pageant.id, 'Teen')['is_valid'] is False

    submit_score(pageant.id, ava.id, 'Judge 3', 'beauty', sheet('beauty', 10))

    assert compute_validation_status(pageant.id, 'Teen')['is_valid'] is True


def test_division_without_checked_in_contestants_is_invalid(make_pageant, make_contestant):
    pageant = make_pageant()
    make_contestant(pageant, 'Ava', checked_in=False)

    status = compute_validation_status(pageant.id, 'Teen')

    assert status['is_valid'] is False
    assert status['deficits'] == []
    assert status['message'] == 'No checked-in contestants in division "Teen".'
    with pytest.raises(ValidationPreconditionFailed):
        validate_division(pageant.id, 'Teen')


def test_absent_contestants_do_not_count(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava')
    make_contestant(pageant, 'No Show', checked_in=False)
    score_all(pageant, ava, 'beauty', sheet)

    status = compute_validation_status(pageant.id, 'Teen')

    assert status['is_valid'] is True
    assert status['contestants_count'] == 1


def test_optional_categories_are_required_when_entered(make_pageant, make_contestant, sheet):
    pageant = make_pageant(enable_casual_wear=True)
    ava = make_contestant(pageant, 'Ava', number='101', photogenic=True, casual_wear=True)
    score_all(pageant, ava, 'beauty', sheet)
    score_all(pageant, ava, 'photogenic', sheet)

    status = compute_validation_status(pageant.id, 'Teen')

    assert status['is_valid'] is False
    assert status['deficits'][0]['missing'] == {'casual_wear': 3}
    assert status['deficits'][0]['message'] == 'Missing 3 scores for #101 Ava'
    assert status['required_scores'] == 9


def test_casual_wear_not_required_when_disabled(make_pageant, make_contestant, sheet):
    pageant = make_pageant(enable_casual_wear=False)
    ava = make_contestant(pageant, 'Ava', casual_wear=True)
    score_all(pageant, ava, 'beauty', sheet)

    assert compute_validation_status(pageant.id, 'Teen')['is_valid'] is True


def test_empty_panel_falls_back_to_default_judge_count(make_pageant, make_contestant):
    pageant = make_pageant(judges=())
    make_contestant(pageant, 'Ava')

    status = compute_validation_status(pageant.id, 'Teen')

    assert status['judges_count'] == 3
    assert status['deficits'][0]['missing'] == {'beauty': 3}


def test_validation_requires_a_division(make_pageant):
    pageant = make_pageant()

    with pytest.raises(InvalidRequest):
        validate_division(pageant.id, None)
    with pytest.raises(InvalidRequest):
        compute_validation_status(pageant.id, '')


def test_revalidation_reports_deficits_that_appeared_later(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava')
    score_all(pageant, ava, 'beauty', sheet)
    assert validate_division(pageant.id, 'Teen') is True
    late = make_contestant(pageant, 'Late', number='109')

    with pytest.raises(ValidationPreconditionFailed) as excinfo:
        validate_division(pageant.id, 'Teen')

    assert [d['contestant_id'] for d in excinfo.value.status['deficits']] == [late.id]
    assert DivisionValidation.query.filter_by(pageant_id=pageant.id).count() == 1
