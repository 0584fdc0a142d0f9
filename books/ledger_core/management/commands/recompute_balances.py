from django.core.management.base import BaseCommand, CommandError

from ledger_core.models import Ledger
from ledger_core.services import find_balance_drift, recompute_balances


class Command(BaseCommand):
    help = "Rebuild cached account balances from posted journal lines."

    def add_arguments(self, parser):
        parser.add_argument("--ledger", required=True, help="Ledger slug")
        parser.add_argument(
            "--check",
            action="store_true",
            help="Only report drift, do not fix it",
        )

    def handle(self, *args, **options):
        ledger = Ledger.objects.filter(slug=options["ledger"]).first()
        if ledger is None:
            raise CommandError(f"No ledger with slug {options['ledger']}")

        if options["check"]:
            drift = find_balance_drift(ledger)
        else:
            drift = recompute_balances(ledger)

        for account, cached, actual in drift:
            self.stdout.write(f"  {account.code} {account.name}: {cached} -> {actual}")
        if not drift:
            self.stdout.write(self.style.SUCCESS("All balances match the journal."))
        elif options["check"]:
            self.stdout.write(self.style.WARNING(f"{len(drift)} account(s) drifted."))
        else:
            self.stdout.write(self.style.SUCCESS(f"Fixed {len(drift)} account(s)."))
