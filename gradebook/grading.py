"""
Grading rules for the 0-20 score scale.

Every function here is pure: no database access, no settings lookups beyond
the decimal precision. Renderers and forms call these directly so that
grades are never derived anywhere else.
"""
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from . import config
from .exceptions import ScoreValidationError

MIN_SCORE = Decimal('0')
MAX_SCORE = Decimal('20')
TERMS = (1, 2, 3)

# Assessment numbers per term: two assessments, then one exam
ASSESSMENT_NUMBERS = {1: (1, 2), 2: (3, 4), 3: (5,)}
COMPONENTS_PER_TERM = {term: len(numbers) for term, numbers in ASSESSMENT_NUMBERS.items()}


class ClassTier(str, Enum):
    """Grading tier of a classroom."""
    ORDINARY = 'ordinary'   # Forms 1-5
    ADVANCED = 'advanced'   # Lower and Upper Sixth

    @property
    def label(self):
        return 'Ordinary Level' if self is ClassTier.ORDINARY else 'Advanced Level'


# (minimum average, grade), highest first
GRADE_BANDS = {
    ClassTier.ORDINARY: [
        (Decimal('18'), 'A'),
        (Decimal('15'), 'B'),
        (Decimal('10'), 'C'),
        (Decimal('5'), 'D'),
    ],
    ClassTier.ADVANCED: [
        (Decimal('18'), 'A'),
        (Decimal('16'), 'B'),
        (Decimal('14'), 'C'),
        (Decimal('12'), 'D'),
        (Decimal('10'), 'E'),
        (Decimal('8'), 'O'),
    ],
}

LOWEST_GRADE = {
    ClassTier.ORDINARY: 'U',
    ClassTier.ADVANCED: 'F',
}

PASSING_GRADES = {
    ClassTier.ORDINARY: frozenset('ABC'),
    ClassTier.ADVANCED: frozenset('ABCDE'),
}

# Display banding shares the ordinary thresholds
_STATUS_BANDS = [
    (Decimal('18'), 'Excellent'),
    (Decimal('15'), 'Very Good'),
    (Decimal('10'), 'Good'),
    (Decimal('5'), 'Poor'),
]

_REMARK_BANDS = [
    (Decimal('18'), 'Excellent performance! Keep up the good work.'),
    (Decimal('15'), 'Very good performance. Continue with the good work.'),
    (Decimal('10'), 'Good performance. Room for improvement.'),
    (Decimal('5'), 'Poor performance. Needs to work harder.'),
]


def _to_decimal(value):
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value):
    """Round an average to the configured number of decimal places."""
    places = Decimal(1).scaleb(-int(config.AVERAGE_DECIMAL_PLACES))
    return _to_decimal(value).quantize(places, rounding=ROUND_HALF_UP)


def validate_score(score):
    """Return score as a Decimal, rejecting anything outside 0-20."""
    if score is None:
        return None
    try:
        value = _to_decimal(score)
    except ArithmeticError:
        raise ScoreValidationError(f'Score {score!r} is not a number')
    if not value.is_finite() or value < MIN_SCORE or value > MAX_SCORE:
        raise ScoreValidationError(f'Score {score} is outside the range 0-20')
    return value


def validate_term(term):
    """Return term as an int, rejecting anything but 1, 2 or 3."""
    try:
        number = int(term)
    except (TypeError, ValueError):
        raise ScoreValidationError(f'Invalid term: {term!r}')
    if number not in TERMS or str(number) != str(term).strip():
        raise ScoreValidationError(f'Invalid term: {term!r}')
    return number


def validate_coefficient(coefficient):
    try:
        valid = int(coefficient) == coefficient and coefficient > 0
    except (TypeError, ValueError):
        valid = False
    if not valid:
        raise ScoreValidationError(f'Coefficient must be a positive integer, got {coefficient!r}')
    return int(coefficient)


def subject_average(term, component_scores):
    """
    Average of one subject's component scores for a term.

    Terms 1 and 2 take exactly two optional assessment scores; an absent score
    counts as zero and stays in the denominator. Term 3 takes one optional
    exam score. Returns a Decimal on the 0-20 scale.
    """
    term = validate_term(term)
    components = list(component_scores)
    expected = COMPONENTS_PER_TERM[term]
    if len(components) != expected:
        raise ScoreValidationError(
            f'Term {term} expects {expected} component score(s), got {len(components)}'
        )

    total = Decimal('0')
    for score in components:
        value = validate_score(score)
        if value is not None:
            total += value

    return quantize(total / expected)


def letter_grade(average, tier):
    """Letter grade for an average under the given class tier."""
    tier = ClassTier(tier)
    if average is None:
        return LOWEST_GRADE[tier]
    value = _to_decimal(average)
    for minimum, grade in GRADE_BANDS[tier]:
        if value >= minimum:
            return grade
    return LOWEST_GRADE[tier]


def is_passing(grade, tier):
    """O and F are never passing; ordinary tier passes on A-C, advanced on A-E."""
    if not grade:
        return False
    return grade in PASSING_GRADES[ClassTier(tier)]


def weighted_term_average(subject_reports):
    """
    Coefficient-weighted mean of subject averages.

    Subjects whose average is None (no assessment set at all) are left out of
    both sums. Returns 0 when no coefficient remains.
    """
    weighted_total = Decimal('0')
    total_coefficient = 0

    for report in subject_reports:
        if report.average is None:
            continue
        weighted_total += report.average * report.coefficient
        total_coefficient += report.coefficient

    if total_coefficient == 0:
        return quantize(0)
    return quantize(weighted_total / total_coefficient)


def _band(average, bands, lowest):
    value = _to_decimal(average)
    for minimum, label in bands:
        if value >= minimum:
            return label
    return lowest


def performance_status(average):
    if average is None:
        return 'No Data'
    return _band(average, _STATUS_BANDS, 'Very Poor')


def remarks(average):
    if average is None:
        return 'No assessment data'
    return _band(
        average, _REMARK_BANDS,
        'Very poor performance. Please seek additional help.'
    )


def pass_rate(passed, total):
    """Percentage of passed subjects, 0 when nothing was taken."""
    if not total:
        return quantize(0)
    return quantize(Decimal(passed) * 100 / Decimal(total))


def yearly_remarks(average, rate):
    """Year-end remark combining the yearly average and the subject pass rate."""
    if average is None:
        return 'No assessment data available.'

    average = _to_decimal(average)
    rate = _to_decimal(rate or 0)
    if average >= 16 and rate >= 80:
        return 'Outstanding performance throughout the year! Consistent excellence in all subjects.'
    if average >= 14 and rate >= 70:
        return 'Very good yearly performance. Shows consistent improvement and dedication.'
    if average >= 10 and rate >= 60:
        return 'Satisfactory yearly performance. Good effort shown across terms.'
    if average >= 5:
        return 'Yearly performance needs improvement. Some subjects require more attention.'
    return 'Concern about yearly performance. Significant improvement needed in most subjects.'
