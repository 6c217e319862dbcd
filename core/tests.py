"""
Tests for the core app.

Focuses on:
- Single current academic year
- Database-backed sequence allocation
"""
from datetime import date

from django.test import TestCase

from core.models import AcademicYear, Sequence


class AcademicYearModelTest(TestCase):
    """Tests for AcademicYear model."""

    def setUp(self):
        self.year = AcademicYear.objects.create(
            name='2024/2025',
            start_date=date(2024, 9, 1),
            end_date=date(2025, 7, 31),
            is_current=True
        )

    def test_get_current(self):
        """Test the current year is returned."""
        self.assertEqual(AcademicYear.get_current(), self.year)

    def test_only_one_current_year(self):
        """Test marking a new year current clears the old flag."""
        next_year = AcademicYear.objects.create(
            name='2025/2026',
            start_date=date(2025, 9, 1),
            end_date=date(2026, 7, 31),
            is_current=True
        )
        self.year.refresh_from_db()
        self.assertFalse(self.year.is_current)
        self.assertEqual(AcademicYear.get_current(), next_year)

    def test_no_current_year(self):
        """Test get_current returns None when nothing is current."""
        AcademicYear.objects.update(is_current=False)
        self.assertIsNone(AcademicYear.get_current())


class SequenceModelTest(TestCase):
    """Tests for Sequence allocation."""

    def test_first_value_is_one(self):
        """Test a new sequence starts at 1."""
        self.assertEqual(Sequence.next_value('invoice'), 1)

    def test_values_increase(self):
        """Test consecutive allocations never repeat."""
        values = [Sequence.next_value('invoice') for _ in range(5)]
        self.assertEqual(values, [1, 2, 3, 4, 5])
        self.assertEqual(Sequence.objects.get(name='invoice').last_value, 5)

    def test_sequences_are_independent(self):
        """Test named sequences keep separate counters."""
        Sequence.next_value('a')
        Sequence.next_value('a')
        self.assertEqual(Sequence.next_value('b'), 1)
        self.assertEqual(Sequence.next_value('a'), 3)
