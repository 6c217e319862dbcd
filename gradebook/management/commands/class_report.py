"""
Management command to print the ranked report list of a class.

Usage:
    python manage.py class_report 12 --term 2
    python manage.py class_report 12 --yearly --academic-year 3
"""
from django.core.management.base import BaseCommand, CommandError

from gradebook.aggregator import ReportAggregator
from gradebook.exceptions import NotFoundError, ScoreValidationError
from gradebook.sources import DjangoReportDataSource


class Command(BaseCommand):
    help = 'Print ranked term or yearly results for a class'

    def add_arguments(self, parser):
        parser.add_argument('class_id', type=int, help='Class to report on')
        mode = parser.add_mutually_exclusive_group(required=True)
        mode.add_argument(
            '--term',
            type=int,
            help='Term number (1, 2 or 3)',
        )
        mode.add_argument(
            '--yearly',
            action='store_true',
            help='Report on the whole academic year',
        )
        parser.add_argument(
            '--academic-year',
            type=int,
            help='Academic year ID (defaults to the current year)',
        )

    def handle(self, *args, **options):
        try:
            aggregator = ReportAggregator(DjangoReportDataSource(options.get('academic_year')))
            if options['yearly']:
                report = aggregator.class_yearly_report(options['class_id'])
            else:
                report = aggregator.class_term_report(options['class_id'], options['term'])
        except NotFoundError as e:
            raise CommandError(str(e))
        except ScoreValidationError as e:
            raise CommandError('; '.join(e.messages))

        title = 'Yearly' if options['yearly'] else f'Term {options["term"]}'
        self.stdout.write(self.style.MIGRATE_HEADING(
            f'{title} results for {report.class_name} ({report.tier.label})'
        ))

        for r in report.reports:
            average = r.yearly_average if options['yearly'] else r.average
            shown = f'{average:.2f}' if average is not None else '-'
            line = f'{r.rank:>3}. {r.student_name:<30} {shown:>6}  {r.letter_grade}'
            if r.error:
                line += f'  [{r.error}]'
            self.stdout.write(line)

        class_average = report.class_average
        self.stdout.write(self.style.SUCCESS(
            f'{report.class_size} students, class average '
            f'{class_average if class_average is not None else "-"}, '
            f'{report.total_passed} passed, {report.total_failed} failed'
        ))
