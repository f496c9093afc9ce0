"""Tie detection within categories."""

from app import submit_score, aggregate_division, detect_ties, tie_break_instructions


def test_equal_category_totals_form_a_tie(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava', number='101')
    bella = make_contestant(pageant, 'Bella', number='102')
    cora = make_contestant(pageant, 'Cora', number='103')
    submit_score(pageant.id, ava.id, 'Judge 1', 'beauty', sheet('beauty', 10))
    submit_score(pageant.id, bella.id, 'Judge 1', 'beauty', sheet('beauty', 10))
    submit_score(pageant.id, cora.id, 'Judge 1', 'beauty', sheet('beauty', 9.5))

    ties = detect_ties(aggregate_division(pageant.id, 'Teen'))

    assert len(ties) == 1
    assert ties[0]['category'] == 'beauty'
    assert ties[0]['total'] == 40.0
    assert {c['contestant_id'] for c in ties[0]['contestants']} == {ava.id, bella.id}
    assert tie_break_instructions(ties[0]) == 'Tie in beauty: #101 Ava, #102 Bella (40.0 pts each)'


def test_equal_totals_in_different_categories_are_not_ties(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    ava = make_contestant(pageant, 'Ava')
    bella = make_contestant(pageant, 'Bella', photogenic=True)
    submit_score(pageant.id, ava.id, 'Judge 1', 'beauty', sheet('beauty', 7.5))
    submit_score(pageant.id, bella.id, 'Judge 1', 'photogenic', sheet('photogenic', 10))

    assert detect_ties(aggregate_division(pageant.id, 'Teen')) == []


def test_ties_are_grouped_per_category_and_total(make_pageant, make_contestant, sheet):
    pageant = make_pageant()
    contestants = [make_contestant(pageant, name, photogenic=True) for name in ('Ava', 'Bella', 'Cora', 'Dana')]
    for contestant, beauty in zip(contestants, (5, 5, 8, 8)):
        submit_score(pageant.id, contestant.id, 'Judge 1', 'beauty', sheet('beauty', beauty))
    for contestant in contestants[:3]:
        submit_score(pageant.id, contestant.id, 'Judge 1', 'photogenic', sheet('photogenic', 4))

    ties = detect_ties(aggregate_division(pageant.id, 'Teen'))

    assert [(t['category'], t['total'], len(t['contestants'])) for t in ties] == [
        ('beauty', 32.0, 2),
        ('beauty', 20.0, 2),
        ('photogenic', 12.0, 3),
    ]


def test_no_scores_means_no_ties():
    assert detect_ties([]) == []


def test_instructions_handle_missing_contestant_number():
    tie = {
        'category': 'photogenic',
        'total': 27.5,
        'contestants': [
            {'contestant_id': 1, 'number': None, 'name': 'Ava'},
            {'contestant_id': 2, 'number': '7', 'name': 'Bella'},
        ]
    }

    assert tie_break_instructions(tie) == 'Tie in photogenic: #N/A Ava, #7 Bella (27.5 pts each)'
