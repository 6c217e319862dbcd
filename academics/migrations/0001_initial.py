import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Class',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('level_type', models.CharField(choices=[('form', 'Form'), ('lower_sixth', 'Lower Sixth'), ('upper_sixth', 'Upper Sixth')], default='form', max_length=20)),
                ('level_number', models.PositiveSmallIntegerField(default=1, help_text='1-5 for Forms, 1 for Sixth Form')),
                ('section', models.CharField(help_text='A, B, C, etc.', max_length=5)),
                ('name', models.CharField(editable=False, help_text='Auto-generated: F1-A, LSX-B', max_length=20)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Class',
                'verbose_name_plural': 'Classes',
                'ordering': ['level_type', 'level_number', 'section'],
                'unique_together': {('level_type', 'level_number', 'section')},
            },
        ),
        migrations.CreateModel(
            name='Subject',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100, unique=True)),
                ('code', models.CharField(blank=True, help_text='Allocated automatically when left blank', max_length=20, unique=True)),
                ('coefficient', models.PositiveSmallIntegerField(default=1, help_text='Weight of this subject in the term average', validators=[django.core.validators.MinValueValidator(1)])),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Subject',
                'verbose_name_plural': 'Subjects',
                'ordering': ['name'],
            },
        ),
    ]
