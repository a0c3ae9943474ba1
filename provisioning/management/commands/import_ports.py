import csv

from django.core.management.base import BaseCommand, CommandError

from provisioning.application import registry


class Command(BaseCommand):
    help = (
        "Import ports from a CSV file with the columns "
        "instance_url, port_number, server_region, notes, status. "
        "Rows are imported in file order, which is also their allocation order."
    )

    def add_arguments(self, parser):
        parser.add_argument("csv_path", help="Path to the CSV file to import")

    def handle(self, *args, **options):
        path = options["csv_path"]

        try:
            with open(path, newline="", encoding="utf-8-sig") as handle:
                rows = list(csv.DictReader(handle))
        except OSError as exc:
            raise CommandError(f"Can not read {path}: {exc}")

        if not rows:
            raise CommandError(f"{path} contains no rows")

        missing = {"instance_url", "port_number"} - set(rows[0])
        if missing:
            raise CommandError(f"{path} is missing required columns: {', '.join(sorted(missing))}")

        imported, errors = registry.bulk_import(rows)

        # Row 1 is the header, so data row N is line N + 2
        for index, message in sorted(errors.items()):
            self.stderr.write(f"line {index + 2}: {message}")

        self.stdout.write(self.style.SUCCESS(f"Imported {len(imported)} port(s), {len(errors)} failed"))
