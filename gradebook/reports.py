"""
Report objects handed to renderers and API responses.

All of them are immutable and derived: averages and grades are properties
recomputed from the underlying scores, never stored next to them.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Tuple

from . import grading
from .exceptions import IncompleteDataWarning
from .grading import ClassTier


def _num(value):
    return float(value) if value is not None else None


def _mean(values):
    values = [v for v in values if v is not None]
    if not values:
        return None
    return grading.quantize(sum(values, Decimal('0')) / len(values))


@dataclass(frozen=True)
class SubjectReport:
    subject_id: Any
    subject_name: str
    coefficient: int
    term: int
    tier: ClassTier
    # Two assessment scores for terms 1-2, one exam score for term 3
    components: Tuple[Optional[Decimal], ...] = ()

    @property
    def average(self):
        if not self.components:
            return None
        return grading.subject_average(self.term, self.components)

    @property
    def letter_grade(self):
        return grading.letter_grade(self.average, self.tier)

    @property
    def passed(self):
        return self.average is not None and grading.is_passing(self.letter_grade, self.tier)

    @property
    def assessment_1(self):
        return self.components[0] if self.term != 3 and self.components else None

    @property
    def assessment_2(self):
        return self.components[1] if self.term != 3 and len(self.components) > 1 else None

    @property
    def exam(self):
        return self.components[0] if self.term == 3 and self.components else None

    def as_dict(self):
        return {
            'subject_id': self.subject_id,
            'subject_name': self.subject_name,
            'coefficient': self.coefficient,
            'assessment_1': _num(self.assessment_1),
            'assessment_2': _num(self.assessment_2),
            'exam': _num(self.exam),
            'average': _num(self.average),
            'letter_grade': self.letter_grade,
            'passed': self.passed,
        }


@dataclass(frozen=True)
class TermReport:
    student_id: Any
    student_name: str
    class_id: Any
    class_name: str
    tier: ClassTier
    term: int
    subject_reports: Tuple[SubjectReport, ...]
    # None when the student has no assessment recorded in this term
    average: Optional[Decimal]
    rank: int
    class_size: int
    admission_number: str = ''
    warnings: Tuple[IncompleteDataWarning, ...] = ()
    # Set on placeholder reports for students whose data could not be processed
    error: str = ''

    @property
    def has_data(self):
        return self.average is not None

    @property
    def letter_grade(self):
        return grading.letter_grade(self.average, self.tier)

    @property
    def passed(self):
        return self.has_data and grading.is_passing(self.letter_grade, self.tier)

    @property
    def subjects_total(self):
        return len(self.subject_reports)

    @property
    def subjects_passed(self):
        return sum(1 for sr in self.subject_reports if sr.passed)

    @property
    def remarks(self):
        return grading.remarks(self.average)

    @property
    def performance_status(self):
        return grading.performance_status(self.average)

    def as_dict(self):
        return {
            'student_id': self.student_id,
            'student_name': self.student_name,
            'admission_number': self.admission_number,
            'class_id': self.class_id,
            'class_name': self.class_name,
            'tier': self.tier.value,
            'term': self.term,
            'subjects': [sr.as_dict() for sr in self.subject_reports],
            'average': _num(self.average),
            'letter_grade': self.letter_grade,
            'rank': self.rank,
            'class_size': self.class_size,
            'passed': self.passed,
            'subjects_passed': self.subjects_passed,
            'subjects_total': self.subjects_total,
            'remarks': self.remarks,
            'performance_status': self.performance_status,
            'warnings': [str(w) for w in self.warnings],
            'error': self.error or None,
        }


@dataclass(frozen=True)
class TermSummary:
    term: int
    average: Optional[Decimal]
    rank: Optional[int]
    remarks: str
    passed: bool

    def as_dict(self):
        return {
            'term': self.term,
            'average': _num(self.average),
            'rank': self.rank,
            'remarks': self.remarks,
            'passed': self.passed,
        }


@dataclass(frozen=True)
class YearlySubjectReport:
    subject_name: str
    coefficient: int
    tier: ClassTier
    term1_average: Optional[Decimal] = None
    term2_average: Optional[Decimal] = None
    term3_average: Optional[Decimal] = None

    @property
    def term_averages(self):
        return (self.term1_average, self.term2_average, self.term3_average)

    @property
    def yearly_average(self):
        return _mean(self.term_averages)

    @property
    def yearly_grade(self):
        return grading.letter_grade(self.yearly_average, self.tier)

    @property
    def passed(self):
        return self.yearly_average is not None and grading.is_passing(self.yearly_grade, self.tier)

    def as_dict(self):
        return {
            'subject_name': self.subject_name,
            'coefficient': self.coefficient,
            'term1_average': _num(self.term1_average),
            'term2_average': _num(self.term2_average),
            'term3_average': _num(self.term3_average),
            'yearly_average': _num(self.yearly_average),
            'yearly_grade': self.yearly_grade,
            'passed': self.passed,
        }


@dataclass(frozen=True)
class YearlyReport:
    student_id: Any
    student_name: str
    class_id: Any
    class_name: str
    tier: ClassTier
    term_reports: Tuple[TermReport, ...]
    subject_reports: Tuple[YearlySubjectReport, ...]
    rank: int
    class_size: int
    admission_number: str = ''
    missing_terms: Tuple[int, ...] = ()
    warnings: Tuple[IncompleteDataWarning, ...] = ()
    error: str = ''

    @property
    def yearly_average(self):
        """Mean of the term averages that exist; missing terms are skipped."""
        return _mean(tr.average for tr in self.term_reports)

    @property
    def letter_grade(self):
        return grading.letter_grade(self.yearly_average, self.tier)

    @property
    def passed(self):
        return self.yearly_average is not None and grading.is_passing(self.letter_grade, self.tier)

    @property
    def subjects_total(self):
        return sum(tr.subjects_total for tr in self.term_reports)

    @property
    def subjects_passed(self):
        return sum(tr.subjects_passed for tr in self.term_reports)

    @property
    def pass_rate(self):
        return grading.pass_rate(self.subjects_passed, self.subjects_total)

    @property
    def remarks(self):
        return grading.yearly_remarks(self.yearly_average, self.pass_rate)

    @property
    def term_summaries(self):
        return tuple(
            TermSummary(
                term=tr.term,
                average=tr.average,
                rank=tr.rank if tr.has_data else None,
                remarks=tr.remarks,
                passed=tr.passed,
            )
            for tr in self.term_reports
        )

    def as_dict(self):
        return {
            'student_id': self.student_id,
            'student_name': self.student_name,
            'admission_number': self.admission_number,
            'class_id': self.class_id,
            'class_name': self.class_name,
            'tier': self.tier.value,
            'yearly_average': _num(self.yearly_average),
            'letter_grade': self.letter_grade,
            'rank': self.rank,
            'class_size': self.class_size,
            'passed': self.passed,
            'subjects_passed': self.subjects_passed,
            'subjects_total': self.subjects_total,
            'pass_rate': _num(self.pass_rate),
            'remarks': self.remarks,
            'subjects': [sr.as_dict() for sr in self.subject_reports],
            'terms': [ts.as_dict() for ts in self.term_summaries],
            'missing_terms': list(self.missing_terms),
            'warnings': [str(w) for w in self.warnings],
            'error': self.error or None,
        }


@dataclass(frozen=True)
class _ClassSummary:
    class_id: Any
    class_name: str
    tier: ClassTier
    reports: tuple = field(default_factory=tuple)

    def _average_of(self, report):
        raise NotImplementedError

    @property
    def class_size(self):
        return len(self.reports)

    @property
    def class_average(self):
        return _mean(self._average_of(r) for r in self.reports)

    @property
    def total_passed(self):
        return sum(1 for r in self.reports if r.passed)

    @property
    def total_failed(self):
        return self.class_size - self.total_passed

    @property
    def pass_rate(self):
        return grading.pass_rate(self.total_passed, self.class_size)

    def _summary_dict(self):
        return {
            'class_id': self.class_id,
            'class_name': self.class_name,
            'tier': self.tier.value,
            'class_size': self.class_size,
            'class_average': _num(self.class_average),
            'total_passed': self.total_passed,
            'total_failed': self.total_failed,
            'pass_rate': _num(self.pass_rate),
            'reports': [r.as_dict() for r in self.reports],
        }


@dataclass(frozen=True)
class ClassTermReport(_ClassSummary):
    term: int = 1

    def _average_of(self, report):
        return report.average

    def as_dict(self):
        return {'term': self.term, **self._summary_dict()}


@dataclass(frozen=True)
class ClassYearlyReport(_ClassSummary):

    def _average_of(self, report):
        return report.yearly_average

    def as_dict(self):
        return self._summary_dict()
