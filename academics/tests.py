"""
Tests for the academics app.

Focuses on:
- Class name generation and grading tier
- Subject code allocation and coefficient validation
"""
from django.core.exceptions import ValidationError
from django.test import TestCase

from academics.models import Class, Subject
from gradebook.grading import ClassTier


class ClassModelTest(TestCase):
    """Tests for Class model."""

    def test_form_name_and_tier(self):
        """Test Forms are named F<n>-<section> and graded ordinary."""
        class_obj = Class.objects.create(level_type=Class.LevelType.FORM, level_number=3, section='B')
        self.assertEqual(class_obj.name, 'F3-B')
        self.assertEqual(class_obj.tier, ClassTier.ORDINARY)

    def test_sixth_form_name_and_tier(self):
        """Test Sixth Form classes are graded advanced."""
        lower = Class.objects.create(level_type=Class.LevelType.LOWER_SIXTH, section='A')
        upper = Class.objects.create(level_type=Class.LevelType.UPPER_SIXTH, section='C')
        self.assertEqual(lower.name, 'LSX-A')
        self.assertEqual(upper.name, 'USX-C')
        self.assertEqual(lower.tier, ClassTier.ADVANCED)
        self.assertEqual(upper.tier, ClassTier.ADVANCED)

    def test_name_follows_section_change(self):
        """Test name is regenerated on save."""
        class_obj = Class.objects.create(level_number=1, section='A')
        class_obj.section = 'D'
        class_obj.save()
        self.assertEqual(class_obj.name, 'F1-D')


class SubjectModelTest(TestCase):
    """Tests for Subject model."""

    def test_code_allocated(self):
        """Test blank codes are allocated from the subject sequence."""
        maths = Subject.objects.create(name='Mathematics')
        english = Subject.objects.create(name='English Language')
        self.assertEqual(maths.code, 'MAT001')
        self.assertEqual(english.code, 'ENG002')

    def test_explicit_code_kept(self):
        """Test a given code is not replaced."""
        subject = Subject.objects.create(name='Physics', code='PHY')
        self.assertEqual(subject.code, 'PHY')

    def test_default_coefficient(self):
        """Test coefficient defaults to 1."""
        self.assertEqual(Subject.objects.create(name='History').coefficient, 1)

    def test_zero_coefficient_rejected(self):
        """Test full_clean rejects a zero coefficient."""
        subject = Subject(name='Art', code='ART', coefficient=0)
        with self.assertRaises(ValidationError):
            subject.full_clean()
