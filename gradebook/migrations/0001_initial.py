import django.core.validators
import django.db.models.deletion
from decimal import Decimal
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('academics', '0001_initial'),
        ('core', '0001_initial'),
        ('students', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Assessment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('term', models.PositiveSmallIntegerField(choices=[(1, 'First Term'), (2, 'Second Term'), (3, 'Third Term')])),
                ('number', models.PositiveSmallIntegerField(choices=[(1, 'Assessment 1 (Term 1)'), (2, 'Assessment 2 (Term 1)'), (3, 'Assessment 3 (Term 2)'), (4, 'Assessment 4 (Term 2)'), (5, 'Exam (Term 3)')], help_text='Assessment number within the academic year')),
                ('score', models.DecimalField(decimal_places=2, help_text='Score out of 20', max_digits=4, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('20'))])),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('academic_year', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='assessments', to='core.academicyear')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='assessments', to='students.student')),
                ('subject', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='assessments', to='academics.subject')),
            ],
            options={
                'verbose_name': 'Assessment',
                'verbose_name_plural': 'Assessments',
                'db_table': 'assessment',
                'ordering': ['student', 'subject', 'number'],
                'unique_together': {('student', 'subject', 'academic_year', 'number')},
                'indexes': [
                    models.Index(fields=['student', 'term'], name='assessment_student_term_idx'),
                    models.Index(fields=['academic_year', 'term'], name='assessment_year_term_idx'),
                ],
            },
        ),
    ]
