import datetime

from django.core.management.base import BaseCommand, CommandError

from ledger_core.services import run_due_schedules


class Command(BaseCommand):
    help = "Generate every recurring invoice due on or before a date (one scheduler tick)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--date",
            default=None,
            help="Run as of YYYY-MM-DD (default: today)",
        )

    def handle(self, *args, **options):
        today = None
        if options["date"]:
            try:
                today = datetime.date.fromisoformat(options["date"])
            except ValueError:
                raise CommandError("--date must be YYYY-MM-DD")

        summary = run_due_schedules(today=today)
        for number in summary.created:
            self.stdout.write(f"  {number}")
        style = self.style.ERROR if summary.failed else self.style.SUCCESS
        self.stdout.write(style(
            f"{len(summary.created)} created, {summary.skipped} skipped, "
            f"{summary.failed} failed"))
