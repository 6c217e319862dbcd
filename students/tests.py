"""
Tests for the students app.
"""
from django.test import TestCase
from django.utils import timezone

from academics.models import Class
from students.models import Student


class StudentModelTest(TestCase):
    """Tests for Student model."""

    def setUp(self):
        self.class_obj = Class.objects.create(level_number=2, section='A')

    def test_admission_number_allocated(self):
        """Test blank admission numbers come from the student sequence."""
        year = timezone.now().year
        first = Student.objects.create(first_name='Ama', last_name='Mensah', current_class=self.class_obj)
        second = Student.objects.create(first_name='Kofi', last_name='Boateng', current_class=self.class_obj)
        self.assertEqual(first.admission_number, f'STU{year}0001')
        self.assertEqual(second.admission_number, f'STU{year}0002')

    def test_admission_number_kept_on_resave(self):
        """Test saving again does not allocate a new number."""
        student = Student.objects.create(first_name='Ama', last_name='Mensah')
        number = student.admission_number
        student.first_name = 'Akua'
        student.save()
        self.assertEqual(student.admission_number, number)

    def test_full_name(self):
        """Test full name includes other names when present."""
        student = Student(first_name='Ama', other_names='Serwaa', last_name='Mensah')
        self.assertEqual(student.full_name, 'Ama Serwaa Mensah')
        student.other_names = ''
        self.assertEqual(student.full_name, 'Ama Mensah')

    def test_class_roster(self):
        """Test students are reachable from their class."""
        student = Student.objects.create(first_name='Ama', last_name='Mensah', current_class=self.class_obj)
        self.assertEqual(list(self.class_obj.students.all()), [student])
