"""
Tests for the gradebook app.

Focuses on:
- Grading rules on the 0-20 scale (averages, letter grades, pass sets)
- Competition ranking and its tie-break
- Batch and shared report caches
- Term, class and yearly aggregation (in-memory and ORM-backed)
- Signals, JSON endpoints, Celery task and management command
"""
import itertools
import threading
from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from academics.models import Class, Subject
from core.models import AcademicYear
from students.models import Student

from . import grading
from .aggregator import ReportAggregator
from .cache import ReportCache, SharedReportCache, build_report_cache, invalidate_assessments
from .exceptions import IncompleteDataWarning, NotFoundError, ReportCancelled, ScoreValidationError
from .grading import ASSESSMENT_NUMBERS, ClassTier
from .models import Assessment
from .ranking import rank
from .reports import SubjectReport
from .signals import signals_disabled
from .sources import (
    AssessmentRecord,
    ClassRecord,
    DjangoReportDataSource,
    ReportDataSource,
    StudentRecord,
    SubjectRecord,
)
from .tasks import generate_class_term_report


User = get_user_model()


# =============================================================================
# IN-MEMORY DATA SOURCE
# =============================================================================

class InMemoryDataSource(ReportDataSource):
    """Dict-backed data source that counts calls."""

    cache_scope = 'all'

    def __init__(self):
        self.classes = {}
        self.students = {}
        self.subjects = {}
        self.records = []
        self.calls = Counter()

    def add_class(self, class_id, name='F1-A', tier=ClassTier.ORDINARY):
        self.classes[class_id] = ClassRecord(id=class_id, name=name, tier=tier)

    def add_student(self, student_id, name, class_id):
        self.students[student_id] = StudentRecord(id=student_id, name=name, class_id=class_id)

    def add_subject(self, subject_id, name, coefficient=1):
        self.subjects[subject_id] = SubjectRecord(id=subject_id, name=name, coefficient=coefficient)

    def add_scores(self, student_id, subject_id, term, *scores):
        """Record scores in term order; None leaves the slot empty."""
        for number, score in zip(ASSESSMENT_NUMBERS[term], scores):
            if score is not None:
                self.records.append(AssessmentRecord(
                    student_id=student_id,
                    subject_id=subject_id,
                    term=term,
                    number=number,
                    score=Decimal(str(score)),
                ))

    def list_assessments(self, student_id, term):
        self.calls['list_assessments'] += 1
        return [r for r in self.records if r.student_id == student_id and r.term == term]

    def list_assessments_bulk(self, student_ids, term):
        self.calls['list_assessments_bulk'] += 1
        grouped = defaultdict(list)
        for r in self.records:
            if r.term == term:
                grouped[r.student_id].append(r)
        return {sid: grouped.get(sid, []) for sid in student_ids}

    def list_students(self, class_id):
        self.calls['list_students'] += 1
        return [s for s in self.students.values() if s.class_id == class_id]

    def get_student(self, student_id):
        self.calls['get_student'] += 1
        try:
            return self.students[student_id]
        except KeyError:
            raise NotFoundError('Student', student_id)

    def get_subject(self, subject_id):
        self.calls['get_subject'] += 1
        try:
            return self.subjects[subject_id]
        except KeyError:
            raise NotFoundError('Subject', subject_id)

    def get_class(self, class_id):
        self.calls['get_class'] += 1
        try:
            return self.classes[class_id]
        except KeyError:
            raise NotFoundError('Class', class_id)


def three_student_class():
    """Class of three, one subject (coefficient 3), term 1 scores only."""
    source = InMemoryDataSource()
    source.add_class(1, 'F1-A')
    source.add_subject(10, 'Mathematics', coefficient=3)
    source.add_student(1, 'Ama Mensah', 1)
    source.add_student(2, 'Kofi Boateng', 1)
    source.add_student(3, 'Yaw Asante', 1)
    source.add_scores(1, 10, 1, 18, 16)
    source.add_scores(2, 10, 1, 10, 10)
    return source


# =============================================================================
# GRADING RULES
# =============================================================================

class SubjectAverageTest(SimpleTestCase):
    """Tests for subject_average."""

    def test_two_assessments(self):
        """Test terms 1-2 average both assessments."""
        self.assertEqual(grading.subject_average(1, [18, 16]), Decimal('17.00'))
        self.assertEqual(grading.subject_average(2, [Decimal('10'), Decimal('11')]), Decimal('10.50'))

    def test_absent_assessment_counts_as_zero(self):
        """Test an absent score stays in the denominator."""
        self.assertEqual(grading.subject_average(1, [16, None]), Decimal('8.00'))
        self.assertEqual(grading.subject_average(2, [None, None]), Decimal('0.00'))

    def test_exam_term(self):
        """Test term 3 uses the single exam score."""
        self.assertEqual(grading.subject_average(3, [Decimal('13.5')]), Decimal('13.50'))
        self.assertEqual(grading.subject_average(3, [None]), Decimal('0.00'))

    def test_rounds_half_up(self):
        """Test averages are quantized to two places, half up."""
        self.assertEqual(grading.subject_average(1, [15, Decimal('14.55')]), Decimal('14.78'))

    def test_wrong_component_count(self):
        """Test the term formulas are never mixed."""
        with self.assertRaises(ScoreValidationError):
            grading.subject_average(3, [10, 10])
        with self.assertRaises(ScoreValidationError):
            grading.subject_average(1, [10])

    def test_out_of_range_scores_rejected(self):
        """Test scores are rejected, not clamped."""
        for bad in (21, Decimal('20.01'), -1, 'abc', 'nan'):
            with self.assertRaises(ScoreValidationError, msg=bad):
                grading.subject_average(1, [bad, 10])

    def test_boundaries_accepted(self):
        """Test 0 and 20 are valid scores."""
        self.assertEqual(grading.subject_average(1, [0, 20]), Decimal('10.00'))

    def test_invalid_term(self):
        """Test only terms 1, 2 and 3 exist."""
        for bad in (0, 4, 'x', 1.5, None):
            with self.assertRaises(ScoreValidationError, msg=bad):
                grading.validate_term(bad)
        self.assertEqual(grading.validate_term('2'), 2)

    def test_invalid_coefficient(self):
        """Test coefficients must be positive integers."""
        for bad in (0, -2, 1.5, 'two', None):
            with self.assertRaises(ScoreValidationError, msg=bad):
                grading.validate_coefficient(bad)
        self.assertEqual(grading.validate_coefficient(3), 3)

    def test_validation_error_is_django_validation_error(self):
        """Test forms and views can catch it as a ValidationError."""
        with self.assertRaises(ValidationError):
            grading.validate_score(25)


class LetterGradeTest(SimpleTestCase):
    """Tests for letter grades and pass sets."""

    def test_ordinary_bands(self):
        """Test ordinary tier thresholds."""
        cases = [
            ('20', 'A'), ('18', 'A'), ('17.99', 'B'), ('15', 'B'), ('14.99', 'C'),
            ('10', 'C'), ('9.99', 'D'), ('5', 'D'), ('4.99', 'U'), ('0', 'U'),
        ]
        for average, grade in cases:
            self.assertEqual(grading.letter_grade(Decimal(average), ClassTier.ORDINARY), grade, average)

    def test_advanced_bands(self):
        """Test advanced tier thresholds."""
        cases = [
            ('18', 'A'), ('16', 'B'), ('15.99', 'C'), ('14', 'C'), ('12', 'D'),
            ('10', 'E'), ('9.99', 'O'), ('8', 'O'), ('7.99', 'F'),
        ]
        for average, grade in cases:
            self.assertEqual(grading.letter_grade(Decimal(average), ClassTier.ADVANCED), grade, average)

    def test_no_data_gets_lowest_grade(self):
        """Test None maps to U or F."""
        self.assertEqual(grading.letter_grade(None, ClassTier.ORDINARY), 'U')
        self.assertEqual(grading.letter_grade(None, 'advanced'), 'F')

    def test_passing_sets(self):
        """Test O and F never pass; D passes only on the advanced tier."""
        self.assertTrue(grading.is_passing('C', ClassTier.ORDINARY))
        self.assertFalse(grading.is_passing('D', ClassTier.ORDINARY))
        self.assertTrue(grading.is_passing('D', ClassTier.ADVANCED))
        self.assertTrue(grading.is_passing('E', ClassTier.ADVANCED))
        self.assertFalse(grading.is_passing('O', ClassTier.ADVANCED))
        self.assertFalse(grading.is_passing('F', ClassTier.ADVANCED))
        self.assertFalse(grading.is_passing('', ClassTier.ADVANCED))


class WeightedAverageTest(SimpleTestCase):
    """Tests for weighted_term_average."""

    def _report(self, exam, coefficient):
        return SubjectReport(
            subject_id=coefficient, subject_name=f'S{coefficient}', coefficient=coefficient,
            term=3, tier=ClassTier.ORDINARY, components=(Decimal(exam),),
        )

    def test_weighted_by_coefficient(self):
        """Test (20x5 + 10x1) / 6 = 18.33."""
        reports = [self._report('20', 5), self._report('10', 1)]
        self.assertEqual(grading.weighted_term_average(reports), Decimal('18.33'))

    def test_subjects_without_data_skipped(self):
        """Test subjects with no assessment set stay out of both sums."""
        empty = SubjectReport(
            subject_id=9, subject_name='Art', coefficient=4, term=1, tier=ClassTier.ORDINARY,
        )
        self.assertIsNone(empty.average)
        self.assertEqual(grading.weighted_term_average([self._report('12', 2), empty]), Decimal('12.00'))

    def test_no_subjects(self):
        """Test zero total coefficient gives zero."""
        self.assertEqual(grading.weighted_term_average([]), Decimal('0.00'))


class RemarksTest(SimpleTestCase):
    """Tests for remarks, status and yearly remarks."""

    def test_performance_status(self):
        self.assertEqual(grading.performance_status(Decimal('18')), 'Excellent')
        self.assertEqual(grading.performance_status(Decimal('15.5')), 'Very Good')
        self.assertEqual(grading.performance_status(Decimal('10')), 'Good')
        self.assertEqual(grading.performance_status(Decimal('5')), 'Poor')
        self.assertEqual(grading.performance_status(Decimal('4.99')), 'Very Poor')
        self.assertEqual(grading.performance_status(None), 'No Data')

    def test_remarks(self):
        self.assertTrue(grading.remarks(Decimal('19')).startswith('Excellent'))
        self.assertTrue(grading.remarks(Decimal('2')).startswith('Very poor'))
        self.assertEqual(grading.remarks(None), 'No assessment data')

    def test_pass_rate(self):
        """Test pass rate is a percentage, 0 when nothing was taken."""
        self.assertEqual(grading.pass_rate(3, 4), Decimal('75.00'))
        self.assertEqual(grading.pass_rate(1, 3), Decimal('33.33'))
        self.assertEqual(grading.pass_rate(0, 0), Decimal('0.00'))

    def test_yearly_remarks(self):
        self.assertTrue(grading.yearly_remarks(Decimal('17'), Decimal('90')).startswith('Outstanding'))
        # High average but low pass rate falls through to a lower band
        self.assertTrue(grading.yearly_remarks(Decimal('17'), Decimal('50')).startswith('Yearly performance needs'))
        self.assertTrue(grading.yearly_remarks(Decimal('3'), Decimal('0')).startswith('Concern'))
        self.assertEqual(grading.yearly_remarks(None, 0), 'No assessment data available.')


# =============================================================================
# RANKING
# =============================================================================

class RankingTest(SimpleTestCase):
    """Tests for competition ranking."""

    def test_competition_ranking(self):
        """Test 18, 18, 15, 10 rank 1, 1, 3, 4."""
        ranked = rank([('a', 18), ('b', 18), ('c', 15), ('d', 10)])
        self.assertEqual([e.rank for e in ranked], [1, 1, 3, 4])

    def test_ties_ordered_by_id(self):
        """Test tied entries are listed by identifier."""
        ranked = rank([(3, Decimal('12')), (1, Decimal('12')), (2, Decimal('15'))])
        self.assertEqual([(e.id, e.rank) for e in ranked], [(2, 1), (1, 2), (3, 2)])

    def test_insertion_order_irrelevant(self):
        """Test every permutation gives the same result."""
        entries = [(1, 10), (2, 18), (3, 18), (4, None), (5, 15)]
        expected = rank(entries)
        for perm in itertools.permutations(entries):
            self.assertEqual(rank(perm), expected)

    def test_none_ranks_last(self):
        """Test None metrics sort below zero and tie with each other."""
        ranked = rank([('a', None), ('b', Decimal('0')), ('c', None), ('d', Decimal('5'))])
        self.assertEqual([(e.id, e.rank) for e in ranked], [('d', 1), ('b', 2), ('a', 3), ('c', 3)])

    def test_mixed_id_types(self):
        """Test mixed identifier types fall back to string order."""
        ranked = rank([('10', 5), (2, 5)])
        self.assertEqual([e.id for e in ranked], ['10', 2])

    def test_empty(self):
        self.assertEqual(rank([]), [])


# =============================================================================
# CACHES
# =============================================================================

class ReportCacheTest(SimpleTestCase):
    """Tests for the per-batch cache."""

    def setUp(self):
        self.source = three_student_class()
        self.cache = ReportCache(self.source)

    def test_roster_memoized(self):
        """Test the roster is loaded once per batch."""
        first = self.cache.students_in_class(1)
        second = self.cache.students_in_class(1)
        self.assertEqual(first, second)
        self.assertEqual(len(first), 3)
        self.assertEqual(self.source.calls['list_students'], 1)

    def test_assessments_memoized(self):
        """Test assessments are loaded once per (student, term)."""
        self.cache.assessments(1, 1)
        self.cache.assessments(1, 1)
        self.cache.assessments(1, 2)
        self.assertEqual(self.source.calls['list_assessments'], 2)

    def test_prime_assessments_uses_one_bulk_call(self):
        """Test a roster is primed with a single bulk load."""
        self.cache.prime_assessments([1, 2, 3], 1)
        self.cache.prime_assessments([1, 2, 3], 1)
        for sid in (1, 2, 3):
            self.cache.assessments(sid, 1)
        self.assertEqual(self.source.calls['list_assessments_bulk'], 1)
        self.assertEqual(self.source.calls['list_assessments'], 0)
        self.assertEqual(len(self.cache.assessments(1, 1)), 2)
        self.assertEqual(self.cache.assessments(3, 1), ())

    def test_lookups_memoized(self):
        self.cache.student(1)
        self.cache.student(1)
        self.cache.subject(10)
        self.cache.subject(10)
        self.assertEqual(self.cache.class_record(1).tier, ClassTier.ORDINARY)
        self.cache.class_record(1)
        self.assertEqual(self.source.calls['get_student'], 1)
        self.assertEqual(self.source.calls['get_subject'], 1)
        self.assertEqual(self.source.calls['get_class'], 1)

    def test_not_found_propagates(self):
        with self.assertRaises(NotFoundError):
            self.cache.student(99)

    def test_concurrent_access(self):
        """Test threads sharing a cache all see the same roster."""
        results = []

        def load():
            results.append(self.cache.students_in_class(1))

        threads = [threading.Thread(target=load) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len({id(r) for r in results}), 1)

    @override_settings(GRADEBOOK_SHARED_REPORT_CACHE=False)
    def test_build_default(self):
        self.assertIs(type(build_report_cache(self.source)), ReportCache)

    @override_settings(GRADEBOOK_SHARED_REPORT_CACHE=True)
    def test_build_shared(self):
        self.assertIsInstance(build_report_cache(self.source), SharedReportCache)


class SharedReportCacheTest(SimpleTestCase):
    """Tests for the cross-request cache."""

    def setUp(self):
        cache.clear()
        self.source = three_student_class()

    def tearDown(self):
        cache.clear()

    def test_survives_batches(self):
        """Test a second batch reads rosters and assessments from Django's cache."""
        SharedReportCache(self.source).students_in_class(1)
        SharedReportCache(self.source).prime_assessments([1, 2, 3], 1)

        second = SharedReportCache(self.source)
        second.students_in_class(1)
        second.prime_assessments([1, 2, 3], 1)
        second.assessments(2, 1)

        self.assertEqual(self.source.calls['list_students'], 1)
        self.assertEqual(self.source.calls['list_assessments_bulk'], 1)

    def test_invalidation_forces_reload(self):
        """Test an invalidated (student, term) is fetched again."""
        SharedReportCache(self.source).assessments(1, 1)
        self.source.add_scores(1, 10, 2, 12, 12)
        invalidate_assessments(1, 1)
        SharedReportCache(self.source).assessments(1, 1)
        self.assertEqual(self.source.calls['list_assessments'], 2)

    def test_bulk_only_loads_missing(self):
        """Test a partly cached roster only loads the gaps."""
        SharedReportCache(self.source).assessments(1, 1)
        loaded = SharedReportCache(self.source)
        loaded.prime_assessments([1, 2, 3], 1)
        self.assertEqual(len(loaded.assessments(1, 1)), 2)
        self.assertEqual(len(loaded.assessments(2, 1)), 2)
        self.assertEqual(self.source.calls['list_assessments_bulk'], 1)


# =============================================================================
# AGGREGATION (in-memory)
# =============================================================================

class TermAggregationTest(SimpleTestCase):
    """Tests for term and class-term reports."""

    def setUp(self):
        self.source = three_student_class()
        self.aggregator = ReportAggregator(self.source, max_workers=1)

    def test_end_to_end_class(self):
        """Test scores (18,16), (10,10) and none at all rank 1-3 with grades A, C, U."""
        report = self.aggregator.class_term_report(1, 1)

        self.assertEqual([r.student_id for r in report.reports], [1, 2, 3])
        self.assertEqual([r.average for r in report.reports], [Decimal('17.00'), Decimal('10.00'), None])
        self.assertEqual([r.rank for r in report.reports], [1, 2, 3])
        self.assertEqual([r.letter_grade for r in report.reports], ['A', 'C', 'U'])
        self.assertEqual([r.passed for r in report.reports], [True, True, False])
        self.assertEqual(report.class_size, 3)
        self.assertEqual(report.total_passed, 2)
        self.assertEqual(report.total_failed, 1)
        self.assertEqual(report.class_average, Decimal('13.50'))

    def test_single_student_matches_class_run(self):
        """Test term_report ranks against the whole class."""
        report = self.aggregator.term_report(2, 1)
        self.assertEqual(report.rank, 2)
        self.assertEqual(report.class_size, 3)
        self.assertEqual(report.average, Decimal('10.00'))
        self.assertLessEqual(report.rank, report.class_size)

    def test_subject_report_details(self):
        report = self.aggregator.term_report(1, 1)
        [subject] = report.subject_reports
        self.assertEqual(subject.subject_name, 'Mathematics')
        self.assertEqual(subject.coefficient, 3)
        self.assertEqual((subject.assessment_1, subject.assessment_2), (Decimal('18'), Decimal('16')))
        self.assertIsNone(subject.exam)
        self.assertEqual(subject.letter_grade, 'A')
        self.assertEqual(report.subjects_passed, 1)

    def test_student_without_scores_has_no_data(self):
        """Test no recorded score gives no average, distinguishable from a real zero."""
        report = self.aggregator.term_report(3, 1)
        self.assertIsNone(report.average)
        self.assertFalse(report.has_data)
        self.assertEqual(report.subject_reports, ())
        self.assertEqual(report.letter_grade, 'U')
        self.assertEqual(len(report.warnings), 1)
        self.assertIsInstance(report.warnings[0], IncompleteDataWarning)
        self.assertEqual(report.warnings[0].term, 1)
        self.assertEqual(self.aggregator.term_report(1, 1).warnings, ())

    def test_recorded_zero_is_data(self):
        """Test two recorded zeros average 0.00 rather than no data."""
        self.source.add_scores(3, 10, 1, 0, 0)
        report = ReportAggregator(self.source).term_report(3, 1)
        self.assertEqual(report.average, Decimal('0.00'))
        self.assertEqual(report.warnings, ())

    def test_unsat_subjects_excluded_per_student(self):
        """Test a subject only a classmate sat stays out of a student's average."""
        self.source.add_subject(11, 'English', coefficient=1)
        self.source.add_scores(2, 11, 1, 20, 20)
        aggregator = ReportAggregator(self.source)

        first = aggregator.term_report(1, 1)
        self.assertEqual([s.subject_name for s in first.subject_reports], ['Mathematics'])
        self.assertEqual(first.average, Decimal('17.00'))
        self.assertEqual(first.subjects_total, 1)
        # (20 x 1 + 10 x 3) / 4
        second = aggregator.term_report(2, 1)
        self.assertEqual(second.average, Decimal('12.50'))
        self.assertEqual(second.subjects_total, 2)

    def test_partly_recorded_subject_counts_missing_as_zero(self):
        """Test a subject with one recorded score keeps the other as zero."""
        source = InMemoryDataSource()
        source.add_class(1)
        source.add_subject(1, 'Maths')
        source.add_subject(2, 'Art')
        source.add_student(1, 'Ama', 1)
        source.add_student(2, 'Kofi', 1)
        source.add_scores(1, 1, 1, 18, 18)
        source.add_scores(1, 2, 1, 16, None)
        source.add_scores(2, 2, 1, 12, 12)

        report = ReportAggregator(source).term_report(1, 1)
        self.assertEqual(
            [(s.subject_name, s.average) for s in report.subject_reports],
            [('Art', Decimal('8.00')), ('Maths', Decimal('18.00'))],
        )
        self.assertEqual(report.average, Decimal('13.00'))

    def test_term_without_data(self):
        """Test a term nobody was assessed in has no average."""
        report = self.aggregator.class_term_report(1, 2)
        self.assertTrue(all(r.average is None for r in report.reports))
        self.assertTrue(all(r.rank == 1 for r in report.reports))
        self.assertEqual(report.reports[0].remarks, 'No assessment data')
        self.assertIsNone(report.class_average)
        self.assertEqual(report.total_failed, 3)

    def test_advanced_tier(self):
        """Test sixth form classes use advanced bands and pass set."""
        source = InMemoryDataSource()
        source.add_class(2, 'LSX-A', ClassTier.ADVANCED)
        source.add_subject(1, 'Physics')
        source.add_student(1, 'Esi', 2)
        source.add_student(2, 'Kwame', 2)
        source.add_scores(1, 1, 3, 12)
        source.add_scores(2, 1, 3, 9)
        report = ReportAggregator(source).class_term_report(2, 3)
        self.assertEqual([r.letter_grade for r in report.reports], ['D', 'O'])
        self.assertEqual([r.passed for r in report.reports], [True, False])

    def test_ties_share_rank(self):
        source = three_student_class()
        source.add_scores(3, 10, 1, 10, 10)
        report = ReportAggregator(source).class_term_report(1, 1)
        self.assertEqual([(r.student_id, r.rank) for r in report.reports], [(1, 1), (2, 2), (3, 2)])

    def test_standings_memoized_per_batch(self):
        """Test one aggregator reads each roster once."""
        self.aggregator.class_term_report(1, 1)
        self.aggregator.term_report(1, 1)
        self.aggregator.term_report(3, 1)
        self.assertEqual(self.source.calls['list_students'], 1)
        self.assertEqual(self.source.calls['list_assessments_bulk'], 1)

    def test_invalid_term(self):
        with self.assertRaises(ScoreValidationError):
            self.aggregator.term_report(1, 4)
        with self.assertRaises(ScoreValidationError):
            self.aggregator.class_term_report(1, 0)

    def test_unknown_student(self):
        with self.assertRaises(NotFoundError):
            self.aggregator.term_report(99, 1)

    def test_unknown_class(self):
        with self.assertRaises(NotFoundError):
            self.aggregator.class_term_report(42, 1)

    def test_student_without_class(self):
        self.source.add_student(7, 'Abena', None)
        with self.assertRaises(NotFoundError):
            self.aggregator.term_report(7, 1)

    def test_as_dict(self):
        data = self.aggregator.class_term_report(1, 1).as_dict()
        self.assertEqual(data['term'], 1)
        self.assertEqual(data['tier'], 'ordinary')
        self.assertEqual(data['reports'][0]['average'], 17.0)
        self.assertEqual(data['reports'][0]['subjects'][0]['assessment_1'], 18.0)
        self.assertEqual(data['reports'][2]['warnings'], ['No assessment recorded for Yaw Asante in term 1'])
        self.assertIsNone(data['reports'][0]['error'])


class BatchFailureTest(SimpleTestCase):
    """Tests for per-student failures inside a class run."""

    def setUp(self):
        self.source = three_student_class()
        # Out of range score recorded for student 2
        self.source.records = [r for r in self.source.records if r.student_id != 2]
        self.source.records.append(AssessmentRecord(2, 10, 1, 1, Decimal('25')))
        self.aggregator = ReportAggregator(self.source)

    def test_placeholder_report(self):
        """Test the failing student gets a placeholder ranked last."""
        with self.assertLogs('gradebook.aggregator', level='WARNING') as logs:
            report = self.aggregator.class_term_report(1, 1)

        by_id = {r.student_id: r for r in report.reports}
        self.assertIsNone(by_id[2].average)
        self.assertIn('outside the range', by_id[2].error)
        self.assertEqual(by_id[2].rank, 3)
        self.assertEqual(by_id[1].rank, 1)
        self.assertEqual(by_id[3].rank, 2)
        self.assertTrue(any('student 2' in line for line in logs.output))

    def test_single_report_raises(self):
        """Test the requested student's failure reaches the caller."""
        with self.assertRaises(ScoreValidationError):
            self.aggregator.term_report(2, 1)
        self.assertEqual(self.aggregator.term_report(1, 1).rank, 1)

    def test_missing_subject(self):
        """Test a dangling subject only affects students who sat it."""
        source = three_student_class()
        source.add_scores(3, 99, 1, 15, 15)
        report = ReportAggregator(source).class_term_report(1, 1)
        by_id = {r.student_id: r for r in report.reports}
        self.assertIn('Subject 99 not found', by_id[3].error)
        self.assertEqual(by_id[1].average, Decimal('17.00'))

    def test_assessment_in_wrong_term(self):
        source = three_student_class()
        source.records.append(AssessmentRecord(1, 10, 1, 5, Decimal('10')))
        with self.assertRaises(ScoreValidationError):
            ReportAggregator(source).term_report(1, 1)


class CancellationTest(SimpleTestCase):
    """Tests for cancellation and deadlines."""

    def test_cancel_event(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(ReportCancelled):
            ReportAggregator(three_student_class()).class_term_report(1, 1, cancel=cancel)

    def test_cancel_event_with_workers(self):
        cancel = threading.Event()
        cancel.set()
        aggregator = ReportAggregator(three_student_class(), max_workers=3)
        with self.assertRaises(ReportCancelled):
            aggregator.class_yearly_report(1, cancel=cancel)

    def test_deadline(self):
        """Test a run past its deadline is discarded."""
        aggregator = ReportAggregator(three_student_class(), deadline=5)
        clock = itertools.count(0, 10)
        with mock.patch('gradebook.aggregator.time.monotonic', side_effect=lambda: next(clock)):
            with self.assertRaises(ReportCancelled):
                aggregator.class_term_report(1, 1)

    def test_cancelled_run_not_memoized(self):
        """Test a later run on the same aggregator still computes."""
        cancel = threading.Event()
        cancel.set()
        aggregator = ReportAggregator(three_student_class())
        with self.assertRaises(ReportCancelled):
            aggregator.class_term_report(1, 1, cancel=cancel)
        self.assertEqual(aggregator.class_term_report(1, 1).class_size, 3)


class WorkerPoolTest(SimpleTestCase):
    """Tests for the per-student thread pool."""

    def test_pool_matches_inline(self):
        """Test pooled and inline runs give identical reports."""
        source = three_student_class()
        source.add_subject(11, 'English', coefficient=2)
        for sid in range(4, 20):
            source.add_student(sid, f'Student {sid:02d}', 1)
            source.add_scores(sid, 10, 1, sid % 20, (sid * 3) % 20)
            source.add_scores(sid, 11, 1, (sid * 7) % 20, None)

        inline = ReportAggregator(source, max_workers=1).class_term_report(1, 1)
        pooled = ReportAggregator(source, max_workers=4).class_term_report(1, 1)
        self.assertEqual(inline.as_dict(), pooled.as_dict())

    @override_settings(GRADEBOOK_REPORT_MAX_WORKERS=3)
    def test_pool_size_from_settings(self):
        self.assertEqual(ReportAggregator(three_student_class()).max_workers, 3)


class YearlyAggregationTest(SimpleTestCase):
    """Tests for yearly reports."""

    def test_single_term_student(self):
        """Test a student assessed only in term 1 keeps that average for the year."""
        source = InMemoryDataSource()
        source.add_class(1)
        source.add_subject(1, 'Biology')
        source.add_student(1, 'Ama', 1)
        source.add_scores(1, 1, 1, 14, 14)

        report = ReportAggregator(source).yearly_report(1)
        self.assertEqual(report.yearly_average, Decimal('14.00'))
        self.assertEqual(report.missing_terms, (2, 3))
        self.assertEqual([ts.term for ts in report.term_summaries], [1])
        self.assertEqual(sorted(w.term for w in report.warnings), [2, 3])
        self.assertEqual(report.subject_reports[0].yearly_average, Decimal('14.00'))
        self.assertIsNone(report.subject_reports[0].term2_average)

    def test_full_year(self):
        """Test term averages, subject rollups and yearly rank."""
        source = three_student_class()
        source.add_scores(1, 10, 2, 14, 14)
        source.add_scores(1, 10, 3, 11)
        source.add_scores(2, 10, 2, 20, 20)
        source.add_scores(2, 10, 3, 19)
        aggregator = ReportAggregator(source)

        report = aggregator.class_yearly_report(1)
        first, second, third = report.reports

        # Student 2: (10 + 20 + 19) / 3
        self.assertEqual((first.student_id, first.yearly_average, first.rank), (2, Decimal('16.33'), 1))
        # Student 1: (17 + 14 + 11) / 3
        self.assertEqual((second.student_id, second.yearly_average, second.rank), (1, Decimal('14.00'), 2))
        self.assertEqual((third.student_id, third.yearly_average, third.rank), (3, None, 3))
        self.assertEqual(third.missing_terms, (1, 2, 3))
        self.assertEqual(third.term_reports, ())
        self.assertEqual(third.letter_grade, 'U')

        [maths] = second.subject_reports
        self.assertEqual(maths.term_averages, (Decimal('17.00'), Decimal('14.00'), Decimal('11.00')))
        self.assertEqual(maths.yearly_grade, 'C')
        self.assertEqual(second.subjects_total, 3)
        self.assertEqual(second.subjects_passed, 3)
        self.assertEqual(second.pass_rate, Decimal('100.00'))
        self.assertEqual([ts.rank for ts in second.term_summaries], [1, 2, 2])

        self.assertEqual(aggregator.yearly_report(1), second)
        # (16.33 + 14.00) / 2
        self.assertEqual(report.class_average, Decimal('15.17'))

    def test_own_missing_term_excluded(self):
        """Test a term classmates sat but the student did not is skipped, not zeroed."""
        source = InMemoryDataSource()
        source.add_class(1)
        source.add_subject(1, 'Biology')
        source.add_student(1, 'Ama', 1)
        source.add_student(2, 'Kofi', 1)
        source.add_scores(1, 1, 1, 14, 14)
        source.add_scores(2, 1, 1, 10, 10)
        source.add_scores(2, 1, 2, 12, 12)
        aggregator = ReportAggregator(source)

        report = aggregator.yearly_report(1)
        self.assertEqual(report.yearly_average, Decimal('14.00'))
        self.assertEqual(report.missing_terms, (2, 3))
        self.assertEqual([ts.term for ts in report.term_summaries], [1])
        [biology] = report.subject_reports
        self.assertEqual(biology.term_averages, (Decimal('14.00'), None, None))
        self.assertEqual(biology.yearly_average, Decimal('14.00'))
        self.assertEqual(report.rank, 1)

        term_two = aggregator.term_report(1, 2)
        self.assertIsNone(term_two.average)
        self.assertEqual(term_two.rank, 2)
        self.assertEqual(aggregator.yearly_report(2).yearly_average, Decimal('11.00'))

    def test_yearly_error_raised_for_student(self):
        source = three_student_class()
        source.records.append(AssessmentRecord(2, 10, 3, 5, Decimal('-1')))
        aggregator = ReportAggregator(source)
        report = {r.student_id: r for r in aggregator.class_yearly_report(1).reports}
        self.assertIn('outside the range', report[2].error)
        self.assertEqual(report[2].missing_terms, (2, 3))
        with self.assertRaises(ScoreValidationError):
            aggregator.yearly_report(2)

    def test_as_dict(self):
        data = ReportAggregator(three_student_class()).yearly_report(1).as_dict()
        self.assertEqual(data['yearly_average'], 17.0)
        self.assertEqual(data['missing_terms'], [2, 3])
        self.assertEqual(data['terms'][0]['rank'], 1)


class StudentRecordTest(TestCase):
    """Tests for StudentRecord.coerce."""

    def test_coerce_model(self):
        class_obj = Class.objects.create(level_number=1, section='A')
        student = Student.objects.create(first_name='Ama', last_name='Mensah', current_class=class_obj)
        record = StudentRecord.coerce(student)
        self.assertEqual(record, StudentRecord(student.pk, 'Ama Mensah', class_obj.pk, student.admission_number))
        self.assertIs(StudentRecord.coerce(record), record)

    def test_coerce_rejects_other_types(self):
        with self.assertRaises(TypeError):
            StudentRecord.coerce({'id': 1, 'name': 'Ama'})


# =============================================================================
# ORM-BACKED TESTS
# =============================================================================

class GradebookTestCase(TestCase):
    """Base test case with a class, subjects and an academic year."""

    def setUp(self):
        super().setUp()
        cache.clear()
        self.year = AcademicYear.objects.create(
            name='2024/2025',
            start_date=date(2024, 9, 1),
            end_date=date(2025, 7, 31),
            is_current=True
        )
        self.class_obj = Class.objects.create(level_number=1, section='A')
        self.maths = Subject.objects.create(name='Mathematics', coefficient=3)
        self.english = Subject.objects.create(name='English')

        self.ama = Student.objects.create(first_name='Ama', last_name='Mensah', current_class=self.class_obj)
        self.kofi = Student.objects.create(first_name='Kofi', last_name='Boateng', current_class=self.class_obj)
        self.yaw = Student.objects.create(first_name='Yaw', last_name='Asante', current_class=self.class_obj)

        self.score(self.ama, self.maths, 1, '18')
        self.score(self.ama, self.maths, 2, '16')
        self.score(self.kofi, self.maths, 1, '10')
        self.score(self.kofi, self.maths, 2, '10')

    def tearDown(self):
        cache.clear()
        super().tearDown()

    def score(self, student, subject, number, value, year=None):
        term = next(t for t, numbers in ASSESSMENT_NUMBERS.items() if number in numbers)
        return Assessment.objects.create(
            student=student,
            subject=subject,
            academic_year=year or self.year,
            term=term,
            number=number,
            score=Decimal(value),
        )


class AssessmentModelTest(GradebookTestCase):
    """Tests for Assessment model."""

    def test_clean_rejects_wrong_term(self):
        """Test assessment 3 cannot be recorded in term 1."""
        assessment = Assessment(
            student=self.yaw, subject=self.maths, academic_year=self.year,
            term=1, number=3, score=Decimal('12'),
        )
        with self.assertRaises(ValidationError):
            assessment.full_clean()

    def test_clean_rejects_out_of_range(self):
        assessment = Assessment(
            student=self.yaw, subject=self.maths, academic_year=self.year,
            term=3, number=5, score=Decimal('20.5'),
        )
        with self.assertRaises(ValidationError):
            assessment.full_clean()

    def test_slot(self):
        self.assertEqual(self.score(self.yaw, self.maths, 4, '11').slot, 1)
        self.assertEqual(self.score(self.yaw, self.maths, 5, '11').slot, 0)


class DjangoReportDataSourceTest(GradebookTestCase):
    """Tests for the ORM data source."""

    def test_defaults_to_current_year(self):
        source = DjangoReportDataSource()
        self.assertEqual(source.academic_year, self.year)
        self.assertEqual(source.cache_scope, f'ay{self.year.pk}')

    def test_unknown_year(self):
        with self.assertRaises(NotFoundError):
            DjangoReportDataSource(academic_year=9999)

    def test_bulk_load_is_one_query(self):
        source = DjangoReportDataSource(self.year)
        with self.assertNumQueries(1):
            loaded = source.list_assessments_bulk([self.ama.pk, self.kofi.pk, self.yaw.pk], 1)
        self.assertEqual(len(loaded[self.ama.pk]), 2)
        self.assertEqual(loaded[self.yaw.pk], [])
        self.assertEqual(loaded[self.ama.pk][0].score, Decimal('18'))

    def test_scoped_to_academic_year(self):
        old_year = AcademicYear.objects.create(
            name='2023/2024', start_date=date(2023, 9, 1), end_date=date(2024, 7, 31)
        )
        self.score(self.yaw, self.maths, 1, '20', year=old_year)
        self.assertEqual(DjangoReportDataSource(self.year).list_assessments(self.yaw.pk, 1), [])
        self.assertEqual(len(DjangoReportDataSource(old_year.pk).list_assessments(self.yaw.pk, 1)), 1)

    def test_roster_excludes_inactive(self):
        self.yaw.is_active = False
        self.yaw.save()
        ids = [s.id for s in DjangoReportDataSource().list_students(self.class_obj.pk)]
        self.assertEqual(ids, [self.kofi.pk, self.ama.pk])

    def test_lookups(self):
        source = DjangoReportDataSource()
        self.assertEqual(source.get_student(self.ama.pk).name, 'Ama Mensah')
        self.assertEqual(source.get_subject(self.maths.pk).coefficient, 3)
        self.assertEqual(source.get_class(self.class_obj.pk).tier, ClassTier.ORDINARY)
        self.assertEqual(source.get_class(self.class_obj.pk).name, 'F1-A')

    def test_lookups_not_found(self):
        source = DjangoReportDataSource()
        for lookup in (source.get_student, source.get_subject, source.get_class):
            with self.assertRaises(NotFoundError):
                lookup(9999)
            with self.assertRaises(NotFoundError):
                lookup('abc')


class OrmAggregationTest(GradebookTestCase):
    """End-to-end aggregation over the database."""

    def test_end_to_end(self):
        report = ReportAggregator().class_term_report(self.class_obj.pk, 1)
        self.assertEqual(
            [(r.student_name, r.average, r.rank, r.letter_grade) for r in report.reports],
            [
                ('Ama Mensah', Decimal('17.00'), 1, 'A'),
                ('Kofi Boateng', Decimal('10.00'), 2, 'C'),
                ('Yaw Asante', None, 3, 'U'),
            ]
        )

    def test_class_run_query_count_is_flat(self):
        """Test query count does not grow with the roster."""
        with self.assertNumQueries(5):
            # year, class, roster, assessments, subject
            ReportAggregator().class_term_report(self.class_obj.pk, 1)

        for i in range(10):
            student = Student.objects.create(first_name=f'S{i}', last_name='Extra', current_class=self.class_obj)
            self.score(student, self.english, 1, '12')
        with self.assertNumQueries(6):
            ReportAggregator().class_term_report(self.class_obj.pk, 1)

    def test_yearly(self):
        report = ReportAggregator().yearly_report(self.ama.pk)
        self.assertEqual(report.yearly_average, Decimal('17.00'))
        self.assertEqual(report.missing_terms, (2, 3))

    def test_student_not_on_roster(self):
        """Test an inactive student has no report."""
        self.yaw.is_active = False
        self.yaw.save()
        with self.assertRaises(NotFoundError):
            ReportAggregator().term_report(self.yaw.pk, 1)


@override_settings(GRADEBOOK_SHARED_REPORT_CACHE=True)
class SignalInvalidationTest(GradebookTestCase):
    """Tests that writes keep the shared cache correct."""

    def term_average(self, student):
        return ReportAggregator().term_report(student.pk, 1).average

    def test_new_score_visible(self):
        self.assertEqual(self.term_average(self.yaw), None)
        self.score(self.yaw, self.maths, 1, '12')
        self.assertEqual(self.term_average(self.yaw), Decimal('6.00'))

    def test_updated_and_deleted_score_visible(self):
        assessment = Assessment.objects.get(student=self.kofi, number=1)
        self.assertEqual(self.term_average(self.kofi), Decimal('10.00'))

        assessment.score = Decimal('20')
        assessment.save()
        self.assertEqual(self.term_average(self.kofi), Decimal('15.00'))

        assessment.delete()
        self.assertEqual(self.term_average(self.kofi), Decimal('5.00'))

    def test_class_change_invalidates_both_rosters(self):
        other = Class.objects.create(level_number=1, section='B')
        self.assertEqual(ReportAggregator().class_term_report(self.class_obj.pk, 1).class_size, 3)
        self.assertEqual(ReportAggregator().class_term_report(other.pk, 1).class_size, 0)

        self.yaw.current_class = other
        self.yaw.save()

        self.assertEqual(ReportAggregator().class_term_report(self.class_obj.pk, 1).class_size, 2)
        self.assertEqual(ReportAggregator().class_term_report(other.pk, 1).class_size, 1)

    def test_new_student_joins_roster(self):
        ReportAggregator().class_term_report(self.class_obj.pk, 1)
        Student.objects.create(first_name='Efua', last_name='Owusu', current_class=self.class_obj)
        self.assertEqual(ReportAggregator().class_term_report(self.class_obj.pk, 1).class_size, 4)

    def test_signals_disabled(self):
        """Test bulk writes inside signals_disabled leave the cache alone until invalidated."""
        self.assertEqual(self.term_average(self.yaw), None)
        with signals_disabled():
            self.score(self.yaw, self.maths, 1, '12')
        self.assertEqual(self.term_average(self.yaw), None)

        invalidate_assessments(self.yaw.pk, 1, self.year.pk)
        self.assertEqual(self.term_average(self.yaw), Decimal('6.00'))


class ReportViewsTest(GradebookTestCase):
    """Tests for the JSON endpoints."""

    def setUp(self):
        super().setUp()
        self.teacher = User.objects.create_user(username='teacher', password='testpass123')
        self.teacher.groups.add(Group.objects.create(name='Teachers'))
        self.client.login(username='teacher', password='testpass123')

    def test_login_required(self):
        self.client.logout()
        response = self.client.get(reverse('gradebook:class_term_report', args=[self.class_obj.pk, 1]))
        self.assertEqual(response.status_code, 302)

    def test_teacher_role_required(self):
        User.objects.create_user(username='parent', password='testpass123')
        self.client.login(username='parent', password='testpass123')
        response = self.client.get(reverse('gradebook:class_term_report', args=[self.class_obj.pk, 1]))
        self.assertEqual(response.status_code, 302)

    def test_class_term_report(self):
        response = self.client.get(reverse('gradebook:class_term_report', args=[self.class_obj.pk, 1]))
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['class_name'], 'F1-A')
        self.assertEqual([r['rank'] for r in data['reports']], [1, 2, 3])
        self.assertEqual(data['reports'][0]['letter_grade'], 'A')

    def test_student_term_report(self):
        response = self.client.get(reverse('gradebook:student_term_report', args=[self.kofi.pk, 1]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['average'], 10.0)

    def test_yearly_reports(self):
        response = self.client.get(reverse('gradebook:student_yearly_report', args=[self.ama.pk]))
        self.assertEqual(response.json()['yearly_average'], 17.0)
        response = self.client.get(reverse('gradebook:class_yearly_report', args=[self.class_obj.pk]))
        self.assertEqual(response.json()['class_size'], 3)

    def test_not_found(self):
        response = self.client.get(reverse('gradebook:student_term_report', args=[9999, 1]))
        self.assertEqual(response.status_code, 404)
        self.assertIn('not found', response.json()['error'])

    def test_invalid_term(self):
        response = self.client.get(reverse('gradebook:class_term_report', args=[self.class_obj.pk, 4]))
        self.assertEqual(response.status_code, 400)
        self.assertIn('Invalid term', response.json()['error'])

    def test_academic_year_param(self):
        url = reverse('gradebook:class_term_report', args=[self.class_obj.pk, 1])
        response = self.client.get(url, {'academic_year': 9999})
        self.assertEqual(response.status_code, 404)

    def test_grade_preview(self):
        url = reverse('gradebook:grade_preview')
        response = self.client.get(url, {'term': 1, 'class': self.class_obj.pk, 'score': ['16']})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['average'], 8.0)
        self.assertEqual(response.json()['letter_grade'], 'D')
        self.assertFalse(response.json()['passed'])

    def test_grade_preview_rejects_bad_input(self):
        url = reverse('gradebook:grade_preview')
        response = self.client.get(url, {'term': 1, 'class': self.class_obj.pk, 'score': ['21']})
        self.assertEqual(response.status_code, 400)
        response = self.client.get(url, {'term': 3, 'class': self.class_obj.pk, 'score': ['10', '10']})
        self.assertEqual(response.status_code, 400)
        response = self.client.get(url, {'term': 1})
        self.assertEqual(response.status_code, 400)

    def test_only_get(self):
        response = self.client.post(reverse('gradebook:class_yearly_report', args=[self.class_obj.pk]))
        self.assertEqual(response.status_code, 405)


class ClassReportTaskTest(GradebookTestCase):
    """Tests for the Celery task."""

    def test_success(self):
        result = generate_class_term_report(self.class_obj.pk, 1)
        self.assertTrue(result['success'])
        self.assertEqual(result['report']['class_size'], 3)

    def test_not_found(self):
        result = generate_class_term_report(9999, 1)
        self.assertEqual(result, {'success': False, 'error': 'Class 9999 not found'})

    def test_invalid_term(self):
        result = generate_class_term_report(self.class_obj.pk, 5)
        self.assertFalse(result['success'])

    def test_soft_time_limit_discards_run(self):
        with mock.patch.object(ReportAggregator, 'class_term_report', side_effect=ReportCancelled('deadline')):
            result = generate_class_term_report(self.class_obj.pk, 1, self.year.pk)
        self.assertEqual(result, {'success': False, 'error': 'Report generation timed out'})


class ClassReportCommandTest(GradebookTestCase):
    """Tests for the class_report management command."""

    def test_term(self):
        out = StringIO()
        call_command('class_report', str(self.class_obj.pk), '--term', '1', stdout=out)
        output = out.getvalue()
        self.assertIn('Term 1 results for F1-A', output)
        self.assertIn('Ama Mensah', output)
        self.assertIn('2 passed, 1 failed', output)

    def test_yearly(self):
        out = StringIO()
        call_command('class_report', str(self.class_obj.pk), '--yearly', stdout=out)
        self.assertIn('Yearly results for F1-A', out.getvalue())

    def test_unknown_class(self):
        with self.assertRaises(CommandError):
            call_command('class_report', '9999', '--term', '1', stdout=StringIO())
