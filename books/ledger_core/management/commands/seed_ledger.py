from django.core.management.base import BaseCommand, CommandError
from django.utils.text import slugify

from ledger_core.models import Ledger
from ledger_core.services import create_ledger, seed_chart


class Command(BaseCommand):
    help = "Create a ledger with the default chart of accounts and tax rate."

    def add_arguments(self, parser):
        parser.add_argument(
            "--name",
            default="Demo Ltd",
            help="Name of the ledger (default: Demo Ltd)",
        )
        parser.add_argument(
            "--slug",
            default=None,
            help="URL slug; derived from the name when omitted",
        )
        parser.add_argument(
            "--currency",
            default="USD",
            help="ISO currency code for every amount in the ledger",
        )

    def handle(self, *args, **options):
        name = options["name"]
        # e.g. "Demo Ltd" → "demo-ltd"
        slug = options["slug"] or slugify(name)
        if not slug:
            raise CommandError("Cannot derive a slug from an empty name")

        ledger = Ledger.objects.filter(slug=slug).first()
        if ledger is not None:
            # Re-running only fills in missing default accounts
            created = seed_chart(ledger)
            self.stdout.write(self.style.NOTICE(
                f"Ledger {slug} exists; added {len(created)} missing account(s)."))
            return

        ledger = create_ledger(name, slug, currency_code=options["currency"])
        self.stdout.write(self.style.SUCCESS(
            f"Created ledger {ledger.name} ({ledger.slug}) "
            f"with {ledger.account_set.count()} accounts."))
